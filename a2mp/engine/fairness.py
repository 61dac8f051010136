"""
Fairness guard - keeps one persona from dominating the floor
"""
from typing import Any, Dict, Optional, Sequence

from a2mp.agents.moderator.agent import SpeakerOption
from a2mp.engine.policy import TurnPolicy
from a2mp.models.conversation_turn import ai_speaker


def recent_occurrences(history: Sequence[Any], speaker: str, window: int) -> int:
    return sum(1 for t in list(history)[-window:] if t.speaker == speaker)


def apply_fairness(
    selected: SpeakerOption,
    options: Sequence[SpeakerOption],
    persona_names: Dict[str, str],
    history: Sequence[Any],
    policy: Optional[TurnPolicy] = None,
) -> SpeakerOption:
    """
    Override the moderator's pick when that persona spoke too often lately.

    `persona_names` maps participant_id -> persona name for personas that
    exist. Preference goes to someone who has not spoken yet, then to whoever
    spoke least recently. With nobody else available the pick stands.
    """
    policy = policy or TurnPolicy()
    history = list(history)

    name = persona_names.get(selected.participant_id)
    if name is None or len(history) < policy.fairness_min_history:
        return selected

    if recent_occurrences(history, ai_speaker(name), policy.fairness_window) < policy.fairness_max_occurrences:
        return selected

    others = [o for o in options if o.participant_id != selected.participant_id]
    if not others:
        return selected

    not_spoken = [o for o in others if not o.has_spoken]
    if not_spoken:
        return not_spoken[0]

    def last_spoke_at(option: SpeakerOption) -> int:
        other_name = persona_names.get(option.participant_id)
        if other_name is None:
            return -1
        speaker = ai_speaker(other_name)
        for index in range(len(history) - 1, -1, -1):
            if history[index].speaker == speaker:
                return index
        return -1

    return min(others, key=last_spoke_at)
