"""Tests for loading and importing YAML sequence definitions."""

from __future__ import annotations

from datetime import time
from pathlib import Path

import pytest

from sequencer.definitions import import_definitions, load_definitions
from sequencer.domain.models import KeywordJoinTrigger, SignalCondition
from sequencer.domain.types import Channel, SequenceStatus

DEFINITIONS = """\
sequences:
  - workspace_id: ws-1
    name: Welcome
    trigger: {type: keyword_join, keyword: JOIN}
    activate: true
    steps:
      - channel: sms
        body: "Hi {first_name}, thanks for joining!"
        delay_minutes: 0
      - channel: email
        subject: "Still interested?"
        body: "Reply to book a visit."
        condition: {type: replied, action: stop}
        send_window: {start: "09:00", end: "17:00"}
  - workspace_id: ws-1
    name: Win-back
    audience: {type: inactive, inactive_days: 90}
    steps:
      - body: "We miss you"
"""


@pytest.fixture
def definitions_file(tmp_path: Path) -> Path:
    path = tmp_path / "sequences.yaml"
    path.write_text(DEFINITIONS, encoding="utf-8")
    return path


class TestLoadDefinitions:
    def test_parses_sequences_and_steps(self, definitions_file: Path) -> None:
        welcome, winback = load_definitions(definitions_file)

        assert welcome.activate is True
        assert welcome.trigger == KeywordJoinTrigger(keyword="JOIN")
        assert [s.channel for s in welcome.steps] == [Channel.SMS, Channel.EMAIL]
        assert isinstance(welcome.steps[1].condition, SignalCondition)
        assert welcome.steps[1].send_window.start == time(9, 0)
        assert winback.activate is False
        assert winback.steps[0].delay_minutes == 1440

    def test_missing_file(self, tmp_path: Path) -> None:
        with pytest.raises(FileNotFoundError):
            load_definitions(tmp_path / "nope.yaml")

    def test_empty_file(self, tmp_path: Path) -> None:
        path = tmp_path / "empty.yaml"
        path.write_text("", encoding="utf-8")
        assert load_definitions(path) == []

    def test_malformed_yaml(self, tmp_path: Path) -> None:
        path = tmp_path / "bad.yaml"
        path.write_text("sequences: [unclosed", encoding="utf-8")
        with pytest.raises(ValueError, match="Invalid YAML"):
            load_definitions(path)

    def test_sequence_without_steps_is_invalid(self, tmp_path: Path) -> None:
        path = tmp_path / "nosteps.yaml"
        path.write_text(
            "sequences:\n  - workspace_id: ws-1\n    name: Empty\n    steps: []\n",
            encoding="utf-8",
        )
        with pytest.raises(ValueError):
            load_definitions(path)


class TestImportDefinitions:
    def test_creates_sequences_honoring_activate_flag(
        self, definitions_file: Path, sequence_store
    ) -> None:
        created = import_definitions(sequence_store, load_definitions(definitions_file))

        assert [s.status for s in created] == [SequenceStatus.ACTIVE, SequenceStatus.DRAFT]
        assert [len(s.steps) for s in created] == [2, 1]
        assert [s.order for s in created[0].steps] == [1, 2]

    def test_activate_all(self, definitions_file: Path, sequence_store) -> None:
        created = import_definitions(
            sequence_store, load_definitions(definitions_file), activate=True
        )
        assert all(s.status == SequenceStatus.ACTIVE for s in created)
