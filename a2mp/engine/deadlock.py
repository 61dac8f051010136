"""
Repetition / deadlock detection over the recent transcript.

Runs before any model call; a positive result pauses the meeting until a
human weighs in.
"""
from dataclasses import dataclass, field
from typing import Any, List, Optional, Sequence

from a2mp.engine.policy import TurnPolicy
from a2mp.models.conversation_turn import is_ai_speaker, is_human_speaker

DEBATE_PHRASES = (
    "however", "but", "on the other hand", "alternatively", "conversely",
    "i disagree", "i agree", "consider", "we should", "perhaps",
    "suggest", "recommend", "propose", "think about", "what if",
    "concern", "worry", "risk", "issue", "problem",
)


@dataclass
class RepetitionCheck:
    is_repetitive: bool = False
    reason: Optional[str] = None
    phrases: List[str] = field(default_factory=list)


def _repeated_phrases(messages: Sequence[str], policy: TurnPolicy) -> List[str]:
    """Debate phrases that occur in at least `keyword_min_messages` messages"""
    return [
        phrase for phrase in DEBATE_PHRASES
        if sum(1 for message in messages if phrase in message) >= policy.keyword_min_messages
    ]


def _strictly_alternating(speakers: Sequence[str]) -> bool:
    if len(set(speakers)) != 2:
        return False
    return all(speakers[i] != speakers[i - 1] for i in range(1, len(speakers)))


def _similar_lengths(messages: Sequence[str], ratio: float) -> bool:
    lengths = [len(m) for m in messages]
    mean = sum(lengths) / len(lengths)
    if mean == 0:
        return False
    return all(abs(length - mean) < mean * ratio for length in lengths)


def detect_repetition(history: Sequence[Any], policy: Optional[TurnPolicy] = None) -> RepetitionCheck:
    """
    Flag a stuck conversation from the last few turns.

    Signals, any of which triggers: repeated debate phrases, two personas
    strictly alternating, formulaic message lengths. A human turn in the
    recent window suppresses detection entirely.
    """
    policy = policy or TurnPolicy()
    history = list(history)

    if len(history) < policy.deadlock_min_history:
        return RepetitionCheck()

    if any(is_human_speaker(t.speaker) for t in history[-policy.deadlock_human_window:]):
        return RepetitionCheck()

    ai_turns = [t for t in history[-policy.deadlock_window:] if is_ai_speaker(t.speaker)]
    if len(ai_turns) < policy.deadlock_min_ai_turns:
        return RepetitionCheck()

    messages = [t.message.lower() for t in ai_turns]

    phrases = _repeated_phrases(messages, policy)
    if len(phrases) >= policy.keyword_min_phrases:
        return RepetitionCheck(
            is_repetitive=True,
            reason=f"Detected circular discussion pattern - key debate phrases repeated: {', '.join(phrases)}",
            phrases=phrases,
        )

    if len(ai_turns) >= policy.alternation_turns:
        speakers = [t.speaker for t in ai_turns[-policy.alternation_turns:]]
        if _strictly_alternating(speakers):
            return RepetitionCheck(
                is_repetitive=True,
                reason="Two AI personas alternating back and forth - likely at a standoff",
            )

    if len(messages) >= policy.length_sample:
        if _similar_lengths(messages[-policy.length_sample:], policy.length_similarity):
            return RepetitionCheck(
                is_repetitive=True,
                reason="AI responses following similar pattern - conversation may be stuck",
            )

    return RepetitionCheck()
