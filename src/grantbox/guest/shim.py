"""Guest execution shim.

This module is the fixed guest program: the host copies it into every
container and runs it there as ``python -B -I -S /grantbox/shim.py``.  It
is the only code in contact with the untrusted script, and it must only
depend on the standard library of the guest image.

Protocol
--------
The host writes ``/grantbox/request.json``::

    {"script": "<source text>",
     "grants": [{"guest_path": "/data", "permission": "ro"}, ...],
     "max_output_bytes": 1048576}

The shim answers with exactly one JSON line on its original stdout::

    {"status": "success", "output": "..."}
    {"status": "failure", "kind": "syntax" | "runtime", "message": "..."}

Anything else (a non-zero exit status, no reply line) is an abnormal
termination of the guest and is reported by the host as a trap.
"""

from __future__ import annotations

import ast
import builtins
import contextlib
import json
import linecache
import os
import sys
import traceback

SOURCE_NAME = "<embedded>"
REQUEST_PATH = "/grantbox/request.json"
DEFAULT_MAX_OUTPUT_BYTES = 1024 * 1024


class ShimInvariantError(RuntimeError):
    """The shim broke one of its own guarantees; never a script error."""


class OutputLimitError(RuntimeError):
    """The script produced more output than the sandbox accepts."""


class OutputSink:
    """Substitute ``sys.stdout`` that collects writes in memory.

    ``write`` appends the UTF-8 encoding of its argument to a growable
    buffer and ``flush`` does nothing.  Nothing written here reaches a
    real stream.  A write that would take the buffer past *limit* bytes
    raises :class:`OutputLimitError` and stores nothing.
    """

    encoding = "utf-8"
    errors = "strict"

    def __init__(self, limit: int | None = None) -> None:
        self._buffer = bytearray()
        self.limit = limit

    def write(self, data: str) -> int:
        if not isinstance(data, str):
            raise TypeError(f"write() argument must be str, not {type(data).__name__}")
        encoded = data.encode("utf-8")
        if self.limit is not None and len(self._buffer) + len(encoded) > self.limit:
            raise OutputLimitError(f"output exceeds {self.limit} bytes")
        self._buffer.extend(encoded)
        return len(data)

    def flush(self) -> None:
        pass

    def writable(self) -> bool:
        return True

    def isatty(self) -> bool:
        return False

    def getvalue(self) -> str:
        """Return everything written so far.

        Raises :class:`ShimInvariantError` if the buffer is not valid
        UTF-8, which only ``write`` fills and so can only happen through
        a bug in this module.
        """
        try:
            return bytes(self._buffer).decode("utf-8")
        except UnicodeDecodeError as exc:
            raise ShimInvariantError("captured output is not valid UTF-8") from exc


# ---------------------------------------------------------------------------
# Compile / execute
# ---------------------------------------------------------------------------


def _compile(script: str):
    """Compile *script* as a full program.

    A trailing expression statement is split off and compiled on its own
    so its value can be reported as the program's result.
    """
    tree = ast.parse(script, filename=SOURCE_NAME, mode="exec")
    final = None
    if tree.body and isinstance(tree.body[-1], ast.Expr):
        last = tree.body.pop()
        final = compile(ast.Expression(body=last.value), SOURCE_NAME, "eval")
    body = compile(tree, SOURCE_NAME, "exec")
    return body, final


def _register_source(script: str) -> None:
    # Lets tracebacks quote lines of the script.
    linecache.cache[SOURCE_NAME] = (len(script), None, script.splitlines(True), SOURCE_NAME)


def _format_syntax_error(exc: BaseException) -> str:
    return "".join(traceback.format_exception_only(type(exc), exc)).rstrip("\n")


def _format_runtime_error(exc: BaseException) -> str:
    tb = exc.__traceback__
    while tb is not None and tb.tb_frame.f_code.co_filename != SOURCE_NAME:
        tb = tb.tb_next
    return "".join(traceback.format_exception(type(exc), exc, tb)).rstrip("\n")


def run(script: str, sink: OutputSink) -> dict[str, str]:
    """Run *script* and return the reply for the host.

    *sink* receives everything the script prints; it is installed as
    ``sys.stdout`` for the duration of the call.  On a compile error or an
    uncaught exception the sink is never read and its contents are
    discarded.
    """
    _register_source(script)
    with contextlib.redirect_stdout(sink):
        try:
            body, final = _compile(script)
        except (SyntaxError, ValueError, RecursionError, MemoryError) as exc:
            return {"status": "failure", "kind": "syntax", "message": _format_syntax_error(exc)}

        namespace: dict[str, object] = {"__name__": "__main__", "__builtins__": builtins}
        try:
            exec(body, namespace)
            value = eval(final, namespace) if final is not None else None
            if value is not None:
                sink.write(str(value))
        except BaseException as exc:  # noqa: BLE001 - every script error becomes a failure
            return {"status": "failure", "kind": "runtime", "message": _format_runtime_error(exc)}

    return {"status": "success", "output": sink.getvalue()}


# ---------------------------------------------------------------------------
# Filesystem and capability guard
# ---------------------------------------------------------------------------

_WRITE_FLAGS = os.O_WRONLY | os.O_RDWR | os.O_APPEND | os.O_CREAT | os.O_TRUNC

# event -> ((path index, dir_fd index), ...)
_READ_EVENTS: dict[str, tuple[tuple[int, int | None], ...]] = {
    "os.listdir": ((0, None),),
    "os.scandir": ((0, None),),
    "os.chdir": ((0, None),),
    "os.listxattr": ((0, None),),
}

_WRITE_EVENTS: dict[str, tuple[tuple[int, int | None], ...]] = {
    "os.remove": ((0, 1),),
    "os.rmdir": ((0, 1),),
    "os.mkdir": ((0, 2),),
    "os.chmod": ((0, 2),),
    "os.chown": ((0, 3),),
    "os.utime": ((0, 3),),
    "os.truncate": ((0, None),),
    "os.rename": ((0, 2), (1, 3)),
    "os.link": ((0, 2), (1, 3)),
    "os.symlink": ((1, 2),),
    "os.setxattr": ((0, None),),
    "os.removexattr": ((0, None),),
}

_DENIED_EVENT_PREFIXES = (
    "subprocess.",
    "os.exec",
    "os.fork",
    "os.forkpty",
    "os.posix_spawn",
    "os.spawn",
    "os.system",
    "os.kill",
    "os.killpg",
    "os.putenv",
    "os.unsetenv",
    "pty.",
    "socket.",
    "ctypes.",
)

_DENIED_MODULES = frozenset({"_posixsubprocess", "_ctypes", "_socket"})

_DEVICE_FILES = frozenset({"/dev/null", "/dev/urandom", "/dev/random"})


def _within(path: str, root: str) -> bool:
    return root == "/" or path == root or path.startswith(root + "/")


class GrantGuard:
    """Audit hook confining the script to its grants.

    The guest's filesystem namespace is the set of granted guest paths.
    Reads are allowed inside any grant (and inside the interpreter's own
    installation so imports keep working); writes only inside read-write
    grants.  Process creation, sockets, ``ctypes`` and environment
    mutation are refused outright.  Refusals raise ``PermissionError`` at
    the point of the offending call.
    """

    def __init__(self, grants, runtime_roots=None) -> None:
        self.read_roots: list[str] = []
        self.write_roots: list[str] = []
        for grant in grants:
            root = os.path.realpath(grant["guest_path"])
            self.read_roots.append(root)
            if grant.get("permission") == "rw":
                self.write_roots.append(root)
        if runtime_roots is None:
            runtime_roots = {sys.prefix, sys.base_prefix, sys.exec_prefix, sys.base_exec_prefix}
        self.runtime_roots = sorted({os.path.realpath(root) for root in runtime_roots})

    def __call__(self, event: str, args: tuple) -> None:
        self.check(event, args)

    def check(self, event: str, args: tuple) -> None:
        if event == "open":
            path, mode, flags = (tuple(args) + (None, None, None))[:3]
            write = bool((flags or 0) & _WRITE_FLAGS)
            if isinstance(mode, str):
                write = write or any(c in mode for c in "wax+")
            self._check_path(event, path, None, write)
        elif event in _READ_EVENTS:
            for path_index, fd_index in _READ_EVENTS[event]:
                self._check_path(event, _arg(args, path_index), _arg(args, fd_index), False)
        elif event in _WRITE_EVENTS:
            for path_index, fd_index in _WRITE_EVENTS[event]:
                self._check_path(event, _arg(args, path_index), _arg(args, fd_index), True)
        elif event == "import":
            if args and args[0] in _DENIED_MODULES:
                raise PermissionError(f"import of {args[0]!r} is not permitted in the sandbox")
        elif event.startswith(_DENIED_EVENT_PREFIXES):
            raise PermissionError(f"{event} is not permitted in the sandbox")

    def _check_path(self, event: str, path, dir_fd, write: bool) -> None:
        if isinstance(path, int) and path in (0, 1, 2):
            return
        resolved = self._resolve(path, dir_fd)
        if resolved is None:
            raise PermissionError(f"{event}: {path!r} is outside the granted paths")
        if write:
            if not any(_within(resolved, root) for root in self.write_roots):
                raise PermissionError(f"{event}: {path!r} is not writable in the sandbox")
            return
        if resolved in _DEVICE_FILES:
            return
        roots = self.read_roots + self.runtime_roots
        if not any(_within(resolved, root) for root in roots):
            raise PermissionError(f"{event}: {path!r} is outside the granted paths")

    @staticmethod
    def _resolve(path, dir_fd):
        if isinstance(path, int):
            return _fd_path(path)
        if path is None:
            path = "."
        path = os.fsdecode(os.fspath(path))
        if not os.path.isabs(path):
            base = _fd_path(dir_fd) if isinstance(dir_fd, int) else os.getcwd()
            if base is None:
                return None
            path = os.path.join(base, path)
        return os.path.realpath(path)


def _arg(args: tuple, index: int | None):
    if index is None or index >= len(args):
        return None
    return args[index]


def _fd_path(fd: int) -> str | None:
    try:
        target = os.readlink(f"/proc/self/fd/{fd}")
    except OSError:
        return None
    return target if os.path.isabs(target) else None


# ---------------------------------------------------------------------------
# Entry point
# ---------------------------------------------------------------------------


def _private_reply_channel():
    """Reserve the original stdout for the reply and point fd 1 at stderr."""
    sys.stdout.flush()
    reply_fd = os.dup(1)
    os.dup2(2, 1)
    return os.fdopen(reply_fd, "w", encoding="utf-8")


def main(argv: list[str] | None = None) -> int:
    argv = sys.argv[1:] if argv is None else argv
    request_path = argv[0] if argv else REQUEST_PATH
    with open(request_path, encoding="utf-8") as fh:
        request = json.load(fh)

    reply_stream = _private_reply_channel()
    sys.addaudithook(GrantGuard(request.get("grants", [])))

    limit = request.get("max_output_bytes", DEFAULT_MAX_OUTPUT_BYTES)
    reply = run(request["script"], OutputSink(limit=limit))
    reply_stream.write(json.dumps(reply) + "\n")
    reply_stream.flush()
    return 0


if __name__ == "__main__":
    sys.exit(main())
