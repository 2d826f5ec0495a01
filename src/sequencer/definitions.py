"""Import sequence definitions from YAML.

A definitions file lists sequences with their steps::

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
            body: "..."
            condition: {type: replied, action: stop}
            send_window: {start: "09:00", end: "17:00"}

Quote send-window times: YAML 1.1 reads an unquoted ``10:30`` as the
integer 630.
"""

from __future__ import annotations

from pathlib import Path

import structlog
import yaml
from pydantic import BaseModel, Field

from sequencer.domain.models import Sequence, SequenceDraft, StepDraft
from sequencer.domain.types import MAX_STEPS_PER_SEQUENCE
from sequencer.state.sequence_store import SequenceStore

logger = structlog.get_logger()


class SequenceDefinition(SequenceDraft):
    """A sequence draft plus its steps, as written in a definitions file."""

    steps: list[StepDraft] = Field(min_length=1, max_length=MAX_STEPS_PER_SEQUENCE)
    activate: bool = False


class DefinitionsFile(BaseModel):
    sequences: list[SequenceDefinition] = Field(default_factory=list)


def load_definitions(path: Path) -> list[SequenceDefinition]:
    """Load and validate sequence definitions from a YAML file.

    Args:
        path: Path to the YAML file.

    Returns:
        The validated definitions, in file order.  An empty file yields an
        empty list.

    Raises:
        FileNotFoundError: If the file does not exist.
        ValueError: If the YAML is malformed or fails validation.
    """
    if not path.exists():
        raise FileNotFoundError(f"Definitions file not found: {path}")

    try:
        raw = yaml.safe_load(path.read_text(encoding="utf-8"))
    except yaml.YAMLError as exc:
        raise ValueError(f"Invalid YAML in {path}: {exc}") from exc

    if raw is None:
        return []
    return DefinitionsFile.model_validate(raw).sequences


def import_definitions(
    store: SequenceStore,
    definitions: list[SequenceDefinition],
    *,
    activate: bool = False,
) -> list[Sequence]:
    """Create each definition as a new sequence with its steps.

    A definition is activated when its own ``activate`` flag or the
    *activate* argument is set.

    Returns:
        The created sequences, re-read after their steps were added.
    """
    created: list[Sequence] = []
    for definition in definitions:
        draft = SequenceDraft.model_validate(
            definition.model_dump(exclude={"steps", "activate"})
        )
        sequence = store.create_sequence(draft)
        for step in definition.steps:
            store.add_step(sequence.id, step)
        if activate or definition.activate:
            store.activate(sequence.id)
        created.append(store.get_sequence(sequence.id))
        logger.info(
            "Sequence imported",
            sequence_id=sequence.id,
            name=sequence.name,
            steps=len(definition.steps),
        )
    return created
