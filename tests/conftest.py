"""Shared test fixtures for acpx tests."""

import pytest

from acpx.conversation import create_conversation
from acpx.models import SessionRecord
from acpx.paths import default_event_log


@pytest.fixture
def session_dir(tmp_path):
    """Empty session directory under tmp_path."""
    path = tmp_path / "sessions"
    path.mkdir()
    return path


@pytest.fixture
def make_record(session_dir):
    """Factory for SessionRecord with sensible defaults."""

    def _make(
        record_id="sess-001",
        acp_session_id=None,
        agent_command="codex",
        cwd="/work/project",
        name=None,
        last_used_at="2025-01-15T10:00:00.000Z",
        closed=False,
        **kwargs,
    ):
        return SessionRecord(
            record_id=record_id,
            acp_session_id=acp_session_id or record_id,
            agent_command=agent_command,
            cwd=cwd,
            name=name,
            created_at="2025-01-15T09:00:00.000Z",
            last_used_at=last_used_at,
            closed=closed,
            event_log=default_event_log(session_dir, record_id),
            conversation=create_conversation("2025-01-15T09:00:00.000Z"),
            **kwargs,
        )

    return _make
