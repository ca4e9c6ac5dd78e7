"""Child processes for the runCommand and pythonCode nodes.

Both functions block; the dispatcher runs them off the event loop.
"""

from __future__ import annotations

import subprocess
import sys
from typing import Callable, List, Optional, Sequence, Tuple

from .errors import AutomationError, ValidationError
from .logger import LEVEL_INFO, LEVEL_WARN

LogFn = Callable[[str, str], None]

_TERMINAL_PROGRAMS = ("cmd", "cmd.exe", "powershell", "powershell.exe", "pwsh", "pwsh.exe")


def _is_windows() -> bool:
    return sys.platform.startswith("win")


def should_spawn_terminal_window(command: str) -> bool:
    """True for commands that open an interactive shell (Windows only)."""
    normalized = command.strip().lower()
    return any(normalized == prog or normalized.startswith(prog + " ") for prog in _TERMINAL_PROGRAMS)


def _decode(data: Optional[bytes]) -> str:
    return (data or b"").decode("utf-8", errors="replace")


def run_system_command(command: str, use_shell: bool = True) -> None:
    """Run `command` and raise AutomationError (with stderr) on a non-zero exit."""
    if not command.strip():
        raise ValidationError("command is empty")

    if use_shell:
        if _is_windows():
            if should_spawn_terminal_window(command):
                status = subprocess.run(["cmd", "/C", "start", "", command]).returncode
                if status != 0:
                    raise AutomationError(f"failed to launch terminal window for command: {command}")
                return
            argv: List[str] = ["cmd", "/C", command]
        else:
            argv = ["sh", "-c", command]
    else:
        argv = command.split()

    try:
        completed = subprocess.run(argv, capture_output=True)
    except OSError as exc:
        raise AutomationError(str(exc)) from exc

    if completed.returncode != 0:
        raise AutomationError(_decode(completed.stderr).strip() or f"command exited with status {completed.returncode}")


def python_candidates() -> List[Tuple[str, Sequence[str]]]:
    """Interpreters to try, the running one first."""
    out: List[Tuple[str, Sequence[str]]] = []
    if sys.executable:
        out.append((sys.executable, ()))
    if _is_windows():
        out.extend([("python", ()), ("py", ("-3",)), ("python3", ())])
    else:
        out.extend([("python3", ()), ("python", ())])
    return out


def emit_process_output(prefix: str, stdout: str, stderr: str, log: LogFn) -> None:
    for line in stdout.splitlines():
        if line.strip():
            log(LEVEL_INFO, f"{prefix} stdout: {line.rstrip()}")
    for line in stderr.splitlines():
        if line.strip():
            log(LEVEL_WARN, f"{prefix} stderr: {line.rstrip()}")


def run_python_code(code: str, label: str, log: LogFn) -> None:
    """Run `code` with `-c` under the first interpreter that exists."""
    if not code.strip():
        log(LEVEL_WARN, f"Python node '{label}' has no code; skipped.")
        return

    for program, prefix_args in python_candidates():
        try:
            completed = subprocess.run([program, *prefix_args, "-c", code], capture_output=True)
        except FileNotFoundError:
            continue
        except OSError as exc:
            raise AutomationError(f"calling the system Python failed: {exc}") from exc

        stderr_text = _decode(completed.stderr)
        emit_process_output("Python", _decode(completed.stdout), stderr_text, log)
        if completed.returncode == 0:
            return
        message = f"python node failed: {program} exited with status {completed.returncode}"
        if stderr_text.strip():
            message += f", stderr: {stderr_text.strip()}"
        raise AutomationError(message)

    log(LEVEL_WARN, f"Python node '{label}' skipped: no Python interpreter found.")
