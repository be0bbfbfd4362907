"""Byte-compile test sources, with javac-style arguments and exit codes.

Invoked as: python -m regtest.compiler [-d DIR] [-O LEVEL] SOURCE...
With ``-d``, ``foo.py`` is compiled to ``DIR/foo.pyc`` so the directory can
be put on a class path and imported from without the sources.
"""

import py_compile
import sys
from pathlib import Path
from typing import TextIO

from regtest.status import Status

EXIT_OK = 0
EXIT_ERROR = 1
EXIT_CMDERR = 2
EXIT_SYSERR = 3

COMPILE_PASS = "Compilation successful"
COMPILE_FAIL = "Compilation failed"
COMPILE_PASS_UNEXPECT = "Compilation passed unexpectedly"
COMPILE_FAIL_EXPECT = "Compilation failed as expected"


class UsageError(Exception):
    pass


def _parse_args(args: list[str]) -> tuple[Path | None, int, list[str]]:
    dest = None
    optimize = -1
    sources = []
    it = iter(args)
    for arg in it:
        if arg in ("-d", "-O"):
            value = next(it, None)
            if value is None:
                raise UsageError(f"{arg} requires an argument")
            if arg == "-d":
                dest = Path(value)
            else:
                try:
                    optimize = int(value)
                except ValueError:
                    raise UsageError(f"bad optimization level: {value}") from None
        elif arg.startswith("-"):
            raise UsageError(f"invalid flag: {arg}")
        else:
            sources.append(arg)
    if not sources:
        raise UsageError("no source files")
    return dest, optimize, sources


def compile_sources(args: list[str], out: TextIO) -> int:
    """Compile the sources named in *args*, reporting problems on *out*."""
    try:
        dest, optimize, sources = _parse_args(args)
    except UsageError as e:
        out.write(f"error: {e}\n")
        out.write("usage: compile [-d DIR] [-O LEVEL] SOURCE...\n")
        return EXIT_CMDERR

    if dest is not None:
        try:
            dest.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            out.write(f"error: cannot create {dest}: {e}\n")
            return EXIT_SYSERR

    rc = EXIT_OK
    for src in sources:
        cfile = None if dest is None else str(dest / (Path(src).stem + ".pyc"))
        try:
            py_compile.compile(src, cfile=cfile, doraise=True, optimize=optimize)
        except py_compile.PyCompileError as e:
            out.write(e.msg.rstrip("\n") + "\n")
            rc = EXIT_ERROR
        except OSError as e:
            out.write(f"error: {src}: {e}\n")
            rc = EXIT_ERROR
    return rc


def status_for_exit_code(exit_code: int) -> Status:
    if exit_code == EXIT_OK:
        return Status.passed(COMPILE_PASS)
    if exit_code == EXIT_ERROR:
        return Status.failed(COMPILE_FAIL)
    if exit_code == EXIT_CMDERR:
        return Status.error("command line error (exit code 2)")
    if exit_code == EXIT_SYSERR:
        return Status.error("system error (exit code 3)")
    return Status.error(f"unexpected exit code from compiler: {exit_code}")


def main() -> None:
    sys.exit(compile_sources(sys.argv[1:], sys.stderr))


if __name__ == "__main__":
    main()
