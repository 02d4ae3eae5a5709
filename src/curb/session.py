"""Run sessions: a memorable name plus a timestamped id.

The session is the explicit context for one run.  It carries the resolved
harness id so collaborators receive it instead of looking it up again.
"""

from __future__ import annotations

import random
import re
from dataclasses import dataclass, replace
from datetime import datetime, timezone

ANIMAL_NAMES = (
    "aardvark albatross alpaca alligator anaconda antelope armadillo badger "
    "beaver bison bobcat buffalo camel caribou cheetah chinchilla chipmunk "
    "cobra cougar coyote crane crow deer dingo dolphin donkey dove duck eagle "
    "elk emu falcon ferret finch flamingo fox gazelle gecko giraffe goose "
    "gorilla hare hawk hedgehog heron hippo ibis iguana impala jackal jaguar "
    "kangaroo koala lemur leopard lion llama lynx macaw magpie manatee meerkat "
    "mink mongoose moose narwhal newt ocelot octopus otter owl panda panther "
    "parrot pelican penguin pika porcupine puffin quail quokka rabbit raccoon "
    "raven reindeer salmon seahorse seal shark sloth squirrel starfish stork "
    "swan tapir tiger toucan turtle vole walrus weasel whale wolf wolverine "
    "wombat woodpecker wren yak zebra"
).split()

_NAME_RE = re.compile(r"[^a-z0-9_-]+")


def random_animal_name(rng: random.Random | None = None) -> str:
    """Pick a random animal name for a session."""
    return (rng or random).choice(ANIMAL_NAMES)


def _normalize_name(name: str) -> str:
    cleaned = _NAME_RE.sub("-", name.strip().lower()).strip("-")
    return cleaned


@dataclass(frozen=True)
class Session:
    """Identity of one run.

    ``id`` is ``<name>-YYYYmmdd-HHMMSS`` (local time), ``started_at`` is the
    UTC ISO-8601 timestamp.
    """

    name: str
    id: str
    started_at: str
    harness_id: str = ""

    @classmethod
    def create(
        cls,
        name: str | None = None,
        *,
        harness_id: str = "",
        now: datetime | None = None,
        rng: random.Random | None = None,
    ) -> Session:
        """Start a new session, choosing a random animal name when none is given."""
        session_name = _normalize_name(name or "") or random_animal_name(rng)
        moment = now or datetime.now()
        if moment.tzinfo is None:
            moment = moment.astimezone()
        started_at = moment.astimezone(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")
        session_id = f"{session_name}-{moment.strftime('%Y%m%d-%H%M%S')}"
        return cls(
            name=session_name,
            id=session_id,
            started_at=started_at,
            harness_id=harness_id,
        )

    def with_harness(self, harness_id: str) -> Session:
        return replace(self, harness_id=harness_id)
