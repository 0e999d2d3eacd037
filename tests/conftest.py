from __future__ import annotations

import pytest

from contextroute.storage import ConversationDatabase


@pytest.fixture
def db() -> ConversationDatabase:
    return ConversationDatabase(":memory:")
