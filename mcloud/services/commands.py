from __future__ import annotations

import asyncio
import subprocess
from typing import Optional, Sequence, Tuple

from mcloud.logger import get_logger
from mcloud.metrics import record_command

_logger = get_logger("commands")


class CommandError(RuntimeError):
    def __init__(self, action: str, detail: str, *, exit_code: Optional[int] = None) -> None:
        super().__init__(f"{action}: {detail}")
        self.action = action
        self.detail = detail
        self.exit_code = exit_code


class CommandUnavailableError(CommandError):
    pass


class CommandTimeoutError(CommandError):
    pass


def _run(
    cmd: Sequence[str],
    *,
    input_text: Optional[str] = None,
    timeout_seconds: float = 60,
) -> Tuple[int, str, str]:
    try:
        proc = subprocess.run(
            list(cmd),
            input=input_text,
            capture_output=True,
            text=True,
            timeout=timeout_seconds,
            check=False,
        )
    except FileNotFoundError as exc:
        raise CommandUnavailableError(f"{cmd[0]}.command", str(exc)) from exc
    except subprocess.TimeoutExpired as exc:
        raise CommandTimeoutError(
            f"{cmd[0]}.command",
            f"timed out after {timeout_seconds}s",
        ) from exc
    return proc.returncode, proc.stdout.strip(), proc.stderr.strip()


async def run_probe(
    cmd: Sequence[str],
    *,
    input_text: Optional[str] = None,
    timeout_seconds: float = 20,
) -> Tuple[int, str, str]:
    """Run a read-only command and return ``(code, stdout, stderr)`` without raising on failure."""
    try:
        return await asyncio.to_thread(
            _run,
            tuple(cmd),
            input_text=input_text,
            timeout_seconds=timeout_seconds,
        )
    except CommandTimeoutError as exc:
        return 124, "", exc.detail
    except CommandUnavailableError as exc:
        return 127, "", exc.detail


async def run_checked(
    cmd: Sequence[str],
    *,
    action: str,
    input_text: Optional[str] = None,
    timeout_seconds: float = 60,
) -> str:
    arg_list = list(cmd)
    code, out, err = await asyncio.to_thread(
        _run,
        tuple(arg_list),
        input_text=input_text,
        timeout_seconds=timeout_seconds,
    )
    if code != 0:
        record_command(action=action, ok=False)
        _logger.warning(
            "command.fail",
            "External command failed",
            action=action,
            args=" ".join(arg_list),
            exit_code=code,
            stderr=err,
            stdout=out,
        )
        raise CommandError(action, err or out or f"exit_{code}", exit_code=code)
    record_command(action=action, ok=True)
    _logger.debug("command.ok", "External command succeeded", action=action, args=" ".join(arg_list))
    return out
