"""Child process entry point for othervm main actions.

Invoked as: python -m regtest.main_wrapper ARGFILE
ARGFILE is JSON: {"entry": ..., "args": [...], "class_path": [...],
"properties": {...}}. The outcome is reported with Status.exit().
"""

import json
import os
import sys
import threading
import traceback

from regtest import testprops
from regtest.inprocess import (
    MAIN_CANT_FIND_MAIN,
    MAIN_CANT_LOAD_TEST,
    MAIN_THREW_EXCEPT,
    EntryPointNotFound,
    describe,
    invoke,
    load_entry_point,
)
from regtest.status import Status

MAIN_CANT_READ_ARGS = "Can't read main args file."


def _read_args(path: str) -> dict:
    with open(path, "r") as f:
        data = json.load(f)
    return {
        "entry": data["entry"],
        "args": list(data.get("args", [])),
        "class_path": list(data.get("class_path", [])),
        "properties": dict(data.get("properties", {})),
    }


def _finish(status: Status) -> None:
    # leftover test threads must not keep the process alive
    try:
        status.exit()
    except SystemExit as e:
        sys.stdout.flush()
        os._exit(e.code)


def _exit_like_test(code) -> None:
    if code is None:
        code = 0
    elif not isinstance(code, int):
        sys.stderr.write(f"{code}\n")
        code = 1
    sys.stdout.flush()
    sys.stderr.flush()
    os._exit(code)


def main() -> None:
    try:
        main_args = _read_args(sys.argv[1])
    except (IndexError, OSError, ValueError, KeyError):
        _finish(Status.failed(MAIN_CANT_READ_ARGS))
        return

    entry = main_args["entry"]
    sys.path[:0] = main_args["class_path"]
    sys.argv = [entry, *main_args["args"]]

    uncaught: list[BaseException] = []

    def excepthook(args):
        traceback.print_exception(args.exc_type, args.exc_value, args.exc_traceback, file=sys.stderr)
        if not uncaught:
            uncaught.append(args.exc_value)

    threading.excepthook = excepthook

    result: list[Status] = []

    def run():
        try:
            func = load_entry_point(entry)
        except EntryPointNotFound:
            sys.stderr.write(f"\nregtest: no callable `main' found for {entry}\n\n")
            result.append(Status.error(MAIN_CANT_FIND_MAIN))
            return
        except Exception as e:
            traceback.print_exc()
            sys.stderr.write(f"\nregtest: cannot import test module for {entry}\n\n")
            result.append(Status.error(MAIN_CANT_LOAD_TEST + describe(e)))
            return
        try:
            invoke(func, main_args["args"])
        except SystemExit as e:
            _exit_like_test(e.code)
        except BaseException as e:
            traceback.print_exc()
            sys.stderr.write(f"\nregtest: Test threw exception: {type(e).__name__}\n"
                             "regtest: shutting down test\n\n")
            result.append(Status.failed(MAIN_THREW_EXCEPT + describe(e)))

    with testprops.overlay(main_args["properties"]):
        t = threading.Thread(target=run, name="TestMainThread")
        t.start()
        t.join()

    if result:
        _finish(result[0])
    elif uncaught:
        _finish(Status.failed(MAIN_THREW_EXCEPT + describe(uncaught[0])))
    else:
        _finish(Status.passed(""))


if __name__ == "__main__":
    main()
