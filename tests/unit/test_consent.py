import pytest

from lifemaster.core.consent import classify_entry_type, has_consent


@pytest.mark.parametrize(
    "message",
    [
        "Yes, log that decision.",
        "I approve the new bedtime plan",
        "go ahead and commit it",
        "Ja, kör på det",
        "Jag godkänner planen",
    ],
)
def test_consent_tokens_grant(message: str) -> None:
    assert has_consent(message) is True


@pytest.mark.parametrize(
    "message",
    [
        "What do you think about going to bed earlier?",
        "Yesterday I slept badly",
        "I körde hem sent",
        "",
    ],
)
def test_consent_requires_whole_word(message: str) -> None:
    assert has_consent(message) is False


def test_classify_adherence_before_intervention() -> None:
    assert classify_entry_type("I ate a big breakfast and want to start fasting") == "adherence"


def test_classify_intervention() -> None:
    assert classify_entry_type("I want to stop drinking coffee after noon") == "intervention"
    assert classify_entry_type("Jag slutar med socker") == "intervention"


def test_classify_defaults_to_insight() -> None:
    assert classify_entry_type("How is my sleep trending?") == "insight"
