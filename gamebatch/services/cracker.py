"""
Cracker adapter - runs an external patch tool on one folder.

The patch itself is done by the external tool. This adapter only passes
the CrackContext on the command line and interprets the result.
"""
from pathlib import Path
from typing import Callable, List, Optional, Sequence, Union
import asyncio
import logging
import shlex

from ..errors import InfrastructureError, PermanentItemError
from ..protocols import CrackContext, CrackResult

logger = logging.getLogger(__name__)

MODIFIED_PREFIX = "MODIFIED "
ERROR_PREFIX = "ERROR "


def validate_context(context: CrackContext) -> None:
    """Permanent problems that make a crack attempt pointless."""
    if not context.app_id or not str(context.app_id).strip():
        raise PermanentItemError("Missing app identifier")
    if not str(context.app_id).strip().isdigit():
        raise PermanentItemError(f"Invalid app identifier: {context.app_id}")
    if not Path(context.folder).is_dir():
        raise PermanentItemError(f"Folder no longer exists: {context.folder}")


class ExternalCracker:
    """
    Invokes `<command> <folder> <app_id> <emulator>`.

    The tool reports `MODIFIED <path>` and `ERROR <text>` lines on stdout;
    any other line is forwarded as status text. Exit code 0 means success.
    """

    def __init__(self, command: Union[str, Sequence[str]]):
        self._command: List[str] = shlex.split(command) if isinstance(command, str) else list(command)
        if not self._command:
            raise ValueError("Cracker command is empty")

    async def crack(
        self,
        context: CrackContext,
        status_callback: Optional[Callable[[str], None]] = None
    ) -> CrackResult:
        validate_context(context)
        argv = self._command + [str(context.folder), str(context.app_id), context.emulator]
        try:
            proc = await asyncio.create_subprocess_exec(
                *argv,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.STDOUT,
            )
        except OSError as e:
            raise InfrastructureError(f"Cannot start cracker: {e}") from e

        result = CrackResult(success=False)
        while True:
            raw = await proc.stdout.readline()
            if not raw:
                break
            line = raw.decode(errors="replace").strip()
            if not line:
                continue
            if line.startswith(MODIFIED_PREFIX):
                result.modified_files.append(line[len(MODIFIED_PREFIX):])
            elif line.startswith(ERROR_PREFIX):
                result.errors.append(line[len(ERROR_PREFIX):])
            elif status_callback:
                status_callback(line)

        code = await proc.wait()
        result.success = code == 0
        if not result.success and not result.errors:
            result.errors.append(f"Cracker exited with code {code}")
        logger.debug(f"Cracker finished for {context.folder} with code {code}")
        return result
