"""Shared fixtures."""

import pytest

from tests.helpers import ScriptedBackend, make_email_tool


@pytest.fixture
def backend():
    """Scripted backend with an empty script."""
    return ScriptedBackend()


@pytest.fixture
def email_tool():
    """Email tool recording recipients in ``email_tool.sent``."""
    sent: list[str] = []
    tool = make_email_tool(sent)
    tool.sent = sent
    return tool
