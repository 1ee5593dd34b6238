"""Permission-gated file access on behalf of an agent.

Agents may only touch absolute paths inside the session's cwd. What they may do
there depends on the permission mode:

    deny-all       nothing
    approve-reads  reads; writes need confirmation
    approve-all    reads and writes
"""

from __future__ import annotations

import logging
import os
import sys
from pathlib import Path
from typing import Callable

import click

from acpx.errors import InvalidPathError, PermissionDeniedError, PermissionPromptUnavailableError
from acpx.models import ClientOperation, iso_now
from acpx.registry import is_within_boundary

logger = logging.getLogger(__name__)

READ_METHOD = "fs/read_text_file"
WRITE_METHOD = "fs/write_text_file"

PERMISSION_MODES = ("approve-all", "approve-reads", "deny-all")
NON_INTERACTIVE_POLICIES = ("deny", "fail")

ConfirmWrite = Callable[[str, str], bool]
OperationCallback = Callable[[ClientOperation], None]


def stdin_is_interactive() -> bool:
    return sys.stdin.isatty() and sys.stderr.isatty()


def prompt_for_write(path: str, content: str) -> bool:
    """Ask on the terminal whether the agent may write path."""
    click.echo(f"\n[permission] agent wants to write {path} ({len(content)} chars)", err=True)
    return click.confirm("Allow?", default=False, err=True)


class FileSystemHandlers:
    def __init__(
        self,
        cwd: str | Path,
        permission_mode: str = "approve-reads",
        non_interactive_permissions: str = "deny",
        confirm_write: ConfirmWrite | None = None,
        on_operation: OperationCallback | None = None,
    ):
        self.cwd = os.path.abspath(str(cwd))
        self.permission_mode = permission_mode
        self.non_interactive_permissions = non_interactive_permissions
        self.confirm_write = confirm_write
        self.on_operation = on_operation

    def _emit(self, method: str, status: str, summary: str, details: str | None = None) -> None:
        if self.on_operation is None:
            return
        self.on_operation(
            ClientOperation(
                method=method,
                status=status,
                summary=summary,
                timestamp=iso_now(),
                details=details,
            )
        )

    def _check_path(self, path: str) -> str:
        if not os.path.isabs(path):
            raise InvalidPathError(f"Path must be absolute: {path}")
        resolved = os.path.abspath(path)
        if not is_within_boundary(self.cwd, resolved):
            raise InvalidPathError(f"Path is outside allowed cwd subtree: {resolved}")
        return resolved

    def _deny(self, method: str, reason: str | None = None) -> PermissionDeniedError:
        logger.info("Denied %s (%s)", method, reason or self.permission_mode)
        return PermissionDeniedError(method, reason)

    def _allow_write(self, path: str, content: str) -> bool:
        if self.permission_mode == "approve-all":
            return True
        if self.permission_mode == "deny-all":
            return False

        if self.confirm_write is not None:
            return self.confirm_write(path, content)
        if stdin_is_interactive():
            return prompt_for_write(path, content)
        if self.non_interactive_permissions == "fail":
            raise PermissionPromptUnavailableError(WRITE_METHOD)
        return False

    def read_text_file(
        self,
        session_id: str,
        path: str,
        line: int | None = None,
        limit: int | None = None,
    ) -> str:
        """Read a text file, optionally a window of `limit` lines from 1-based `line`."""
        summary = f"read {path}"
        self._emit(READ_METHOD, "running", summary)
        try:
            resolved = self._check_path(path)
            if self.permission_mode == "deny-all":
                raise self._deny(READ_METHOD)

            with open(resolved, encoding="utf-8") as f:
                content = f.read()

            if line is not None or limit is not None:
                lines = content.split("\n")
                start = max((line or 1) - 1, 0)
                end = start + limit if limit is not None else len(lines)
                content = "\n".join(lines[start:end])
        except Exception as exc:
            self._emit(READ_METHOD, "failed", summary, str(exc))
            raise

        self._emit(READ_METHOD, "completed", summary)
        logger.debug("Session %s read %s", session_id, resolved)
        return content

    def write_text_file(self, session_id: str, path: str, content: str) -> None:
        summary = f"write {path}"
        self._emit(WRITE_METHOD, "running", summary)
        try:
            resolved = self._check_path(path)
            if not self._allow_write(resolved, content):
                raise self._deny(WRITE_METHOD)

            Path(resolved).parent.mkdir(parents=True, exist_ok=True)
            with open(resolved, "w", encoding="utf-8") as f:
                f.write(content)
        except Exception as exc:
            self._emit(WRITE_METHOD, "failed", summary, str(exc))
            raise

        self._emit(WRITE_METHOD, "completed", summary)
        logger.debug("Session %s wrote %s", session_id, resolved)
