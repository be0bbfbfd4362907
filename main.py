"""regtest - CLI entry point for running a single main or compile action."""

from dotenv import load_dotenv
load_dotenv()

import argparse
import logging
import os
import shutil
import sys
import tempfile

from regtest import alarm
from regtest.config import load_config
from regtest.interpreter import Interpreter
from regtest.pool import AgentPool
from regtest.results import Section
from regtest.runner import ActionRunner, CompileCommand, ExecMode, MainCommand


def _add_common(p: argparse.ArgumentParser) -> None:
    p.add_argument("--mode", choices=[m.value for m in ExecMode], help="Execution mode (default: from config)")
    p.add_argument("--timeout", type=float, help="Timeout in seconds, before the timeout factor (0 = none)")
    p.add_argument("--fail", action="store_true", help="The action is expected to fail")
    p.add_argument("--scratch", help="Scratch directory (default: a fresh temporary directory)")
    p.add_argument("--python", help="Interpreter to run the action with (default: this one)")
    p.add_argument("--vmopt", action="append", default=[], help="Interpreter option; may be repeated")
    p.add_argument("-D", dest="props", action="append", default=[], metavar="NAME=VALUE",
                   help="Test property; may be repeated")


def _parse_props(items: list[str]) -> dict[str, str]:
    props = {}
    for item in items:
        name, sep, value = item.partition("=")
        if not sep:
            raise SystemExit(f"Error: bad property '{item}', expected NAME=VALUE")
        props[name] = value
    return props


def _prepare_scratch(path: str | None) -> tuple[str, bool]:
    """Use *path* as the scratch directory, or make a temporary one. Returns (dir, is_temp)."""
    if path:
        return os.path.abspath(path), False
    return tempfile.mkdtemp(prefix="regtest-scratch-"), True


def _print_section(section: Section) -> None:
    if section.messages:
        print("----------messages:", file=sys.stderr)
        sys.stderr.write(section.messages)
    for name in section.output_names:
        print(f"----------{name}:", file=sys.stderr)
        sys.stderr.write(section.output(name) or "")


def main() -> None:
    parser = argparse.ArgumentParser(
        description="regtest - run a test action in samevm, othervm or agentvm mode",
    )
    parser.add_argument("-c", "--config", default="config.yaml", help="Path to config file (default: config.yaml)")
    parser.add_argument("-v", "--verbose", action="store_true", help="Enable verbose logging")
    sub = parser.add_subparsers(dest="action", required=True)

    p_main = sub.add_parser("main", help="Run a test entry point")
    p_main.add_argument("entry", help="Entry point, module or module:function")
    p_main.add_argument("args", nargs="*", help="Arguments for the entry point")
    p_main.add_argument("-cp", "--class-path", default="", help="Directories to import the test from")
    _add_common(p_main)

    p_compile = sub.add_parser("compile", help="Byte-compile test sources")
    p_compile.add_argument("args", nargs="*",
                           help="[-d DIR] [-O LEVEL] SOURCE...; put -- before compiler flags")
    _add_common(p_compile)

    args = parser.parse_args()

    # Setup logging
    log_level = logging.DEBUG if args.verbose else logging.INFO
    logging.basicConfig(
        level=log_level,
        format="[%(levelname)s] %(name)s: %(message)s",
        stream=sys.stderr,
    )
    logger = logging.getLogger("regtest")

    # Load config
    config = load_config(args.config)
    mode = ExecMode(args.mode or config.execution.mode)
    logger.info("Mode: %s, timeout factor: %g", mode.value, config.execution.timeout_factor)

    scratch, is_temp_scratch = _prepare_scratch(args.scratch)
    interpreter = Interpreter(args.python) if args.python else Interpreter.current()
    common = dict(
        test_name=args.entry if args.action == "main" else "compile",
        scratch_dir=scratch,
        interpreter=interpreter,
        vm_opts=args.vmopt,
        properties=_parse_props(args.props),
        timeout=args.timeout,
        reverse=args.fail,
    )

    pool = AgentPool(config.agent)
    runner = ActionRunner(config, pool)
    section = Section(args.action)
    try:
        if args.action == "main":
            class_path = [p for p in args.class_path.split(os.pathsep) if p]
            cmd = MainCommand(entry=args.entry, args=args.args, class_path=class_path, **common)
            status = runner.run_main(cmd, mode, section)
        else:
            cmd = CompileCommand(args=args.args, **common)
            status = runner.run_compile(cmd, mode, section)
        _print_section(section)
        print(status)
    except KeyboardInterrupt:
        logger.info("Interrupted by user")
        sys.exit(130)
    finally:
        pool.flush()
        alarm.finished()
        if is_temp_scratch:
            shutil.rmtree(scratch, ignore_errors=True)
    sys.exit(0 if status.is_passed() else 1)


if __name__ == "__main__":
    main()
