"""
Turn engine heuristics.

Empirically tuned thresholds, gathered in one immutable value so they can
be configured per deployment and overridden in tests.
"""
from dataclasses import dataclass


@dataclass(frozen=True)
class TurnPolicy:
    max_turns: int = 20
    selection_window: int = 5
    response_window: int = 8

    # Repetition / deadlock detection
    deadlock_min_history: int = 4
    deadlock_window: int = 6
    deadlock_min_ai_turns: int = 3
    deadlock_human_window: int = 5
    keyword_min_messages: int = 2
    keyword_min_phrases: int = 2
    alternation_turns: int = 4
    length_sample: int = 3
    length_similarity: float = 0.3

    # Fairness guard
    fairness_window: int = 5
    fairness_max_occurrences: int = 3
    fairness_min_history: int = 3

    # Escape hatches when the moderator picks "none"
    none_force_below_turns: int = 3
    none_force_from_turns: int = 8

    min_response_chars: int = 10
    max_consecutive_failures: int = 3
    whiteboard_policy: str = "append"

    @classmethod
    def from_settings(cls, settings) -> "TurnPolicy":
        return cls(
            max_turns=settings.MAX_TURNS_PER_MEETING,
            selection_window=settings.SELECTION_HISTORY_WINDOW,
            response_window=settings.RESPONSE_HISTORY_WINDOW,
            deadlock_min_history=settings.DEADLOCK_MIN_HISTORY,
            deadlock_window=settings.DEADLOCK_WINDOW,
            deadlock_min_ai_turns=settings.DEADLOCK_MIN_AI_TURNS,
            deadlock_human_window=settings.DEADLOCK_HUMAN_WINDOW,
            keyword_min_messages=settings.DEADLOCK_KEYWORD_MIN_MESSAGES,
            keyword_min_phrases=settings.DEADLOCK_KEYWORD_MIN_PHRASES,
            alternation_turns=settings.DEADLOCK_ALTERNATION_TURNS,
            length_sample=settings.DEADLOCK_LENGTH_SAMPLE,
            length_similarity=settings.DEADLOCK_LENGTH_SIMILARITY,
            fairness_window=settings.FAIRNESS_WINDOW,
            fairness_max_occurrences=settings.FAIRNESS_MAX_OCCURRENCES,
            fairness_min_history=settings.FAIRNESS_MIN_HISTORY,
            none_force_below_turns=settings.NONE_FORCE_BELOW_TURNS,
            none_force_from_turns=settings.NONE_FORCE_FROM_TURNS,
            min_response_chars=settings.MIN_RESPONSE_CHARS,
            max_consecutive_failures=settings.MAX_CONSECUTIVE_GENERATION_FAILURES,
            whiteboard_policy=settings.WHITEBOARD_UPDATE_POLICY,
        )
