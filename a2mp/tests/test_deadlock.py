"""
Repetition / deadlock detection tests
"""
from types import SimpleNamespace

from a2mp.engine.deadlock import detect_repetition
from a2mp.engine.policy import TurnPolicy


def turns(*pairs):
    return [SimpleNamespace(speaker=s, message=m) for s, m in pairs]


def test_short_history_is_never_repetitive():
    history = turns(
        ("AI:A", "However we should wait."),
        ("AI:B", "However we should hurry."),
        ("AI:A", "However we should wait."),
    )
    assert detect_repetition(history).is_repetitive is False


def test_repeated_debate_phrases():
    history = turns(
        ("Moderator", "Opening the floor."),
        ("AI:A", "However, we should wait until April to move."),
        ("AI:B", "However, we should move in March, the lease ends."),
        ("AI:C", "I have nothing to add right now."),
    )
    check = detect_repetition(history)

    assert check.is_repetitive is True
    assert "however" in check.phrases
    assert "we should" in check.phrases
    assert check.reason.startswith("Detected circular discussion pattern")


def test_human_turn_suppresses_detection():
    history = turns(
        ("AI:A", "However, we should wait until April to move."),
        ("AI:B", "However, we should move in March, the lease ends."),
        ("Human:Host", "Let us settle this now."),
        ("AI:A", "However, we should wait until April to move."),
        ("AI:B", "However, we should move in March, the lease ends."),
    )
    assert detect_repetition(history).is_repetitive is False


def test_two_personas_alternating():
    history = turns(
        ("AI:A", "March is fine."),
        ("AI:B", "Twenty thousand dollars is the cap for the entire office relocation."),
        ("AI:A", "Okay."),
        ("AI:B", "Movers booked early save cash overall in total for everyone here today."),
    )
    check = detect_repetition(history)

    assert check.is_repetitive is True
    assert "alternating" in check.reason


def test_formulaic_lengths():
    history = turns(
        ("Moderator", "Opening the floor."),
        ("AI:A", "March is the right month."),
        ("AI:B", "Twenty thousand is a cap."),
        ("AI:C", "Movers can come on Friday."),
    )
    check = detect_repetition(history)

    assert check.is_repetitive is True
    assert "similar pattern" in check.reason


def test_varied_conversation_passes():
    history = turns(
        ("Moderator", "Opening the floor."),
        ("AI:A", "March."),
        ("AI:B", "Twenty thousand dollars is the cap for the entire office relocation project."),
        ("AI:C", "Movers can come on Friday afternoon."),
    )
    assert detect_repetition(history).is_repetitive is False


def test_thresholds_come_from_policy():
    history = turns(
        ("Moderator", "Opening the floor."),
        ("AI:A", "March is the right month."),
        ("AI:B", "Twenty thousand is a cap."),
        ("AI:C", "Movers can come on Friday."),
    )
    assert detect_repetition(history, TurnPolicy(deadlock_min_history=10)).is_repetitive is False
