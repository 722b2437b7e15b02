"""Phrase bank for prediction reasoning and milestone messages.

Every choice is a pure function of ``(category, seed)`` so the same item and
model always produce the same text.
"""

from __future__ import annotations

import json
import random
import zlib

from taste_engine.models import FeatureVector

PHRASES: dict[str, tuple[str, ...]] = {
    # Energy
    "energy_high_liked": (
        "This hits hard, exactly what you crave",
        "High octane energy, right in your wheelhouse",
        "The intensity here matches your taste perfectly",
        "Maximum energy: you live for this",
        "Power levels aligned with your preferences",
    ),
    "energy_low_liked": (
        "Subdued energy you tend to vibe with",
        "The restrained sound suits your sensibilities",
        "Understated power, your kind of thing",
        "Calm intensity that resonates with you",
        "The quiet energy matches your wavelength",
    ),
    "energy_high_disliked": (
        "More intense than your usual picks",
        "Higher energy than you typically prefer",
        "Pushing your energy comfort zone",
    ),
    "energy_low_disliked": ("Lower energy than your usual, could be a wildcard",),
    # Valence
    "valence_high_liked": (
        "The uplifting mood aligns with what you love",
        "Positive vibes that match your taste",
        "This brightness tends to click with you",
        "Joyful energy that hits your sweet spot",
        "The optimistic tone suits your profile",
    ),
    "valence_low_liked": (
        "The melancholy here resonates with you",
        "Darker mood that suits your palette",
        "The emotional weight matches your preferences",
        "This heaviness is your comfort zone",
        "The brooding atmosphere speaks to you",
    ),
    "valence_high_disliked": ("Brighter than your usual fare",),
    "valence_low_disliked": ("Darker mood than you typically gravitate toward",),
    "valence_neutral": (
        "Emotionally balanced, could go either way",
        "Neither dark nor bright, interesting middle ground",
    ),
    # Danceability
    "dance_high_liked": (
        "The groove factor is high, and you love that",
        "Highly danceable, which you rate well",
        "Strong rhythmic pull that works for you",
    ),
    "dance_low_liked": ("Less focused on groove, which you appreciate",),
    # Acousticness
    "acoustic_high_liked": (
        "Organic, acoustic elements you enjoy",
        "The natural instrumentation fits your taste",
    ),
    "acoustic_low_liked": (
        "Produced, electronic sound you prefer",
        "The polished production style suits you",
    ),
    # Tempo
    "tempo_fast": ("Fast tempo in your sweet spot",),
    "tempo_slow": ("Slower pace that you tend to appreciate",),
    # Overall similarity
    "similar": (
        "Sonically similar to items you've loved",
        "This has the DNA of your favourites",
        "Sound profile matches your top-rated items",
    ),
    "dissimilar": (
        "Outside your typical sonic comfort zone",
        "Different from your usual picks",
        "A departure from your established preferences",
    ),
    # Fallbacks
    "generic": (
        "Based on patterns in your rating history",
        "Drawing from your overall listening profile",
        "Analyzing your established preferences",
        "Cross-referencing similar items you've rated",
        "Consulting your taste fingerprint",
        "Running the numbers on your profile",
    ),
    "secondary": (
        "Your history suggests a pattern here",
        "This fits a trend in your ratings",
        "Similar sonic territory to past favourites",
    ),
    # Disclaimers
    "learning": (
        "Still learning your taste...",
        "Early in the deciphering process",
        "Building your profile...",
    ),
    "guess": (
        "Taking an educated guess",
        "Working with limited data here",
        "Not fully confident, but...",
        "Prediction in beta mode",
    ),
    "first_time": ("First time predicting for you, still learning!",),
    "no_features": ("No audio features for this one, going on your overall ratings",),
}

_STREAK_MILESTONES: dict[int, tuple[str, ...]] = {
    3: ("Getting warm...", "The algorithm stirs...", "A pattern emerges"),
    5: ("We see you!", "Connection established", "Locked in"),
    7: ("Lucky 7: taste confirmed", "On a roll"),
    10: ("Taste twin!", "Double digits!", "You're an open book"),
    15: ("Mind reader!", "The system knows", "Deeply understood"),
    20: ("Predictable in the best way", "Two-oh!", "Crystal clear taste"),
    25: ("Quarter century streak!", "Elite predictor", "Taste legend"),
    30: ("30 in a row!?", "Uncanny accuracy", "Algorithm whisperer"),
    40: ("Beyond prediction", "40 streak maestro"),
    50: ("FIFTY! Legendary.", "Half-century hero", "The taste oracle"),
    75: ("75: you're a mystery solved", "Three-quarters of 100!"),
    100: ("PERFECTION", "Century club!", "The ultimate streak"),
}

_DECIPHER_MILESTONES: tuple[tuple[float, str], ...] = (
    (99, "Fully decoded: we know you"),
    (95, "Taste Oracle status achieved"),
    (90, "Almost completely mapped"),
    (85, "Deep understanding unlocked"),
    (80, "Your taste is 80% decoded"),
    (75, "Three quarters deciphered"),
    (70, "Strong patterns identified"),
    (60, "Significant insights gathered"),
    (50, "Halfway decoded!"),
    (40, "Building your taste profile"),
    (30, "Patterns emerging..."),
    (20, "Learning your preferences"),
    (10, "Gathering initial data"),
)


def phrase(category: str, seed: int) -> str:
    """Pick one variant of *category* deterministically from *seed*.

    Raises:
        KeyError: If *category* is not in :data:`PHRASES`.
    """
    options = PHRASES[category]
    return options[seed % len(options)]


def chance(seed: int, salt: int, probability: float) -> bool:
    """Deterministic coin flip: ``True`` with the given *probability*."""
    return random.Random(seed * 1_000_003 + salt).random() < probability


def feature_seed(fv: FeatureVector | None) -> int:
    """Stable integer seed derived from a feature vector (0 for none)."""
    if fv is None:
        return 0
    return zlib.crc32(json.dumps(fv.to_dict(), sort_keys=True).encode("utf-8"))


def streak_message(streak: int, seed: int = 0) -> str | None:
    """Celebration text for milestone streaks, or ``None``."""
    options = _STREAK_MILESTONES.get(streak)
    if options is not None:
        return options[seed % len(options)]
    if streak > 100 and streak % 25 == 0:
        return f"{streak} streak! Unbelievable."
    if streak > 10 and streak % 10 == 0:
        return f"{streak} in a row!"
    return None


def decipher_message(progress: float) -> str | None:
    """Text for the highest decipher milestone reached, or ``None`` below 10."""
    for threshold, message in _DECIPHER_MILESTONES:
        if progress >= threshold:
            return message
    return None
