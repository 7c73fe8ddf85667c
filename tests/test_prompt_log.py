import logging
from typing import Any, Dict, List

import pytest

# Ensure import path includes src
import sys
from pathlib import Path
sys.path.append(str(Path(__file__).resolve().parents[1] / "src"))

from state.models import PromptLogEntry
from state.prompt_log import PromptLog


class FakeCollection:
    def __init__(self):
        self.docs: List[Dict[str, Any]] = []

    async def insert_one(self, doc: Dict[str, Any]):
        self.docs.append(doc)


class BrokenCollection:
    async def insert_one(self, doc: Dict[str, Any]):
        raise RuntimeError("write refused")


def test_entry_truncates_preview():
    entry = PromptLogEntry.for_prompt("u1", "x" * 1000, email="u1@example.com", source_ip="10.0.0.1")
    assert entry.char_count == 1000
    assert len(entry.preview) == 300
    assert entry.source_ip == "10.0.0.1"
    assert entry.created_at.tzinfo is not None


@pytest.mark.asyncio
async def test_record_inserts_document():
    col = FakeCollection()
    log = PromptLog(collection=col)
    await log.record(PromptLogEntry.for_prompt("u1", "hello", email=None, source_ip="127.0.0.1"))
    assert len(col.docs) == 1
    doc = col.docs[0]
    assert doc["caller_id"] == "u1"
    assert doc["preview"] == "hello"
    assert doc["char_count"] == 5
    assert doc["email"] is None


@pytest.mark.asyncio
async def test_record_swallows_failures(caplog):
    log = PromptLog(collection=BrokenCollection())
    with caplog.at_level(logging.WARNING):
        await log.record(PromptLogEntry.for_prompt("u1", "hello"))
    assert "Failed to record prompt log" in caplog.text


@pytest.mark.asyncio
async def test_without_mongo_entries_go_to_app_log(caplog):
    log = PromptLog()
    with caplog.at_level(logging.INFO, logger="state.prompt_log"):
        await log.record(PromptLogEntry.for_prompt("u9", "hi there"))
    assert "caller=u9" in caplog.text
