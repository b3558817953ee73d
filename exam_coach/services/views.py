"""Per-tab view state.

Each tab carries only the state it needs. Tabs without local state share
:class:`StaticView`.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, Literal, Optional, Union


class TabKind(str, Enum):
    THEORY = "theory"
    BREAKDOWN = "breakdown"
    INTEGRATION = "integration"
    VISUALIZE = "visualize"
    MNEMONIC = "mnemonic"
    QUIZ = "quiz"


QuizMode = Literal["blanks", "cards"]
QUIZ_MODES = ("blanks", "cards")


@dataclass
class StaticView:
    kind: TabKind

    def describe(self) -> dict:
        return {"kind": self.kind.value}


@dataclass
class BreakdownView:
    """Step navigator; ``active_step == step_count`` shows the synthesis."""

    step_count: int
    active_step: int = 0
    kind: TabKind = field(default=TabKind.BREAKDOWN, init=False)

    @property
    def showing_synthesis(self) -> bool:
        return self.active_step >= self.step_count

    def select(self, index: int) -> int:
        self.active_step = max(0, min(int(index), self.step_count))
        return self.active_step

    def describe(self) -> dict:
        return {
            "kind": self.kind.value,
            "activeStep": self.active_step,
            "stepCount": self.step_count,
            "showingSynthesis": self.showing_synthesis,
        }


@dataclass
class BlankResult:
    answer: str
    correct: bool


@dataclass
class QuizView:
    mode: QuizMode = "blanks"
    blank_answers: Dict[int, str] = field(default_factory=dict)
    revealed: Dict[int, BlankResult] = field(default_factory=dict)
    active_card: Optional[int] = None
    kind: TabKind = field(default=TabKind.QUIZ, init=False)

    def toggle_card(self, index: int) -> Optional[int]:
        self.active_card = None if self.active_card == index else index
        return self.active_card

    def describe(self) -> dict:
        return {
            "kind": self.kind.value,
            "mode": self.mode,
            "blankAnswers": {str(key): value for key, value in self.blank_answers.items()},
            "revealed": {
                str(key): {"answer": result.answer, "correct": result.correct}
                for key, result in self.revealed.items()
            },
            "activeCard": self.active_card,
        }


TabView = Union[StaticView, BreakdownView, QuizView]


def build_views(step_count: int) -> Dict[TabKind, TabView]:
    """Fresh view state for a newly loaded study package."""

    views: Dict[TabKind, TabView] = {}
    for kind in TabKind:
        if kind is TabKind.BREAKDOWN:
            views[kind] = BreakdownView(step_count=step_count)
        elif kind is TabKind.QUIZ:
            views[kind] = QuizView()
        else:
            views[kind] = StaticView(kind=kind)
    return views


__all__ = [
    "BlankResult",
    "BreakdownView",
    "QUIZ_MODES",
    "QuizMode",
    "QuizView",
    "StaticView",
    "TabKind",
    "TabView",
    "build_views",
]
