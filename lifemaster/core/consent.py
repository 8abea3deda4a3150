import re

CONSENT_TOKENS = [
    "yes",
    "approve",
    "approved",
    "confirm",
    "confirmed",
    "go ahead",
    "do it",
    "commit",
    "ja",
    "godkänn",
    "godkänner",
    "godkänt",
    "kör",
    "bekräftar",
]

ADHERENCE_KEYWORDS = [
    "ate",
    "eat",
    "meal",
    "food",
    "protein",
    "calories",
    "breakfast",
    "lunch",
    "dinner",
    "workout",
    "training",
    "trained",
    "gym",
    "run",
    "ran",
    "lift",
    "åt",
    "mat",
    "måltid",
    "frukost",
    "middag",
    "träning",
    "tränade",
    "löpning",
    "sprang",
]

INTERVENTION_KEYWORDS = [
    "start",
    "started",
    "stop",
    "stopped",
    "quit",
    "cut",
    "reduce",
    "change",
    "switch",
    "new routine",
    "habit",
    "börjar",
    "började",
    "slutar",
    "slutade",
    "minska",
    "ändra",
    "vana",
]


def _phrase_pattern(phrases: list[str]) -> re.Pattern:
    alternatives = "|".join(re.escape(p) for p in sorted(phrases, key=len, reverse=True))
    # \w is unicode-aware, so "kör" does not match inside "körde".
    return re.compile(rf"(?<!\w)(?:{alternatives})(?!\w)", re.IGNORECASE)


_CONSENT_RE = _phrase_pattern(CONSENT_TOKENS)
_ADHERENCE_RE = _phrase_pattern(ADHERENCE_KEYWORDS)
_INTERVENTION_RE = _phrase_pattern(INTERVENTION_KEYWORDS)


def has_consent(message: str) -> bool:
    return bool(_CONSENT_RE.search(message or ""))


def classify_entry_type(message: str) -> str:
    text = message or ""
    if _ADHERENCE_RE.search(text):
        return "adherence"
    if _INTERVENTION_RE.search(text):
        return "intervention"
    return "insight"
