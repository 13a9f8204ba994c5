"""
Key policy - pure decisions about generating and pruning service account keys.

The provisioner asks the policy; the policy never talks to a terminal. An
interactive CLI, a static config or a test supplies the ``ask`` function.
"""

import logging
from collections.abc import Callable
from dataclasses import dataclass
from enum import Enum
from typing import Optional

logger = logging.getLogger(__name__)


class KeyGenerationMode(str, Enum):
    """What to do when a project already has local keys."""
    ALWAYS = "always"   # Generate a fresh key on every run
    NEVER = "never"     # Keep the existing local keys
    ASK = "ask"         # Delegate to the ask function


class KeyQuestionKind(str, Enum):
    GENERATE = "generate"
    PRUNE = "prune"


@dataclass(frozen=True)
class KeyQuestion:
    """A question handed to the ask function."""

    kind: KeyQuestionKind
    project_id: str
    local_key_count: int = 0
    default: bool = False

    @property
    def prompt(self) -> str:
        if self.kind == KeyQuestionKind.GENERATE:
            return f"[{self.project_id}] {self.local_key_count} local key(s) exist. Generate a new key?"
        return f"[{self.project_id}] Delete older remote keys (keep the latest)?"


AskFunction = Callable[[KeyQuestion], bool]


@dataclass
class KeyPolicy:
    """
    Key lifecycle policy.

    Attributes:
        mode: Generation behaviour when local keys exist
        prune: Whether to delete all but the newest remote key after generating
        ask: Answer function consulted in ASK mode (defaults apply without one)
    """

    mode: KeyGenerationMode = KeyGenerationMode.NEVER
    prune: bool = False
    ask: Optional[AskFunction] = None

    def should_generate(self, project_id: str, local_key_count: int) -> bool:
        """Decide whether to create a key given the existing local key count."""
        if local_key_count == 0:
            return True
        if self.mode == KeyGenerationMode.ALWAYS:
            return True
        if self.mode == KeyGenerationMode.NEVER:
            return False
        return self._ask(KeyQuestion(
            kind=KeyQuestionKind.GENERATE,
            project_id=project_id,
            local_key_count=local_key_count,
            default=True,
        ))

    def should_prune(self, project_id: str) -> bool:
        """Decide whether to prune older remote keys after a key was generated."""
        if self.mode != KeyGenerationMode.ASK:
            return self.prune
        return self._ask(KeyQuestion(
            kind=KeyQuestionKind.PRUNE,
            project_id=project_id,
            default=self.prune,
        ))

    def _ask(self, question: KeyQuestion) -> bool:
        if self.ask is None:
            logger.debug(f"No answer function, using default for: {question.prompt}")
            return question.default
        return bool(self.ask(question))

    @classmethod
    def from_settings(cls, mode: str, prune: bool, ask: Optional[AskFunction] = None) -> "KeyPolicy":
        return cls(mode=KeyGenerationMode(mode), prune=prune, ask=ask)
