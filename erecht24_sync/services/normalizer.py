"""Name normalisation for stored legal-text pages."""

import re
import unicodedata
from datetime import datetime

# German umlauts transliterate to two letters rather than being dropped.
_TRANSLITERATIONS = {
    "ä": "ae",
    "ö": "oe",
    "ü": "ue",
    "ß": "ss",
    "Ä": "ae",
    "Ö": "oe",
    "Ü": "ue",
}


def page_name(text: str) -> str:
    """Turn *text* into a page name: lowercase ASCII words joined by hyphens.

    ``"Datenschutzerklärung Social Media"`` → ``"datenschutzerklaerung-social-media"``
    """
    for char, replacement in _TRANSLITERATIONS.items():
        text = text.replace(char, replacement)

    # Normalise unicode, keep only ASCII
    name = unicodedata.normalize("NFKD", text)
    name = name.encode("ascii", "ignore").decode("ascii")

    name = re.sub(r"[^a-z0-9]+", "-", name.lower())
    name = name.strip("-")

    return name or "page"


def timestamped_page_name(label: str, moment: datetime) -> str:
    """Unique page name from a microsecond timestamp and *label*.

    Microsecond resolution keeps two syncs within the same second apart.
    """
    return f"{moment.strftime('%Y-%m-%d-%H-%M-%S-%f')}-{page_name(label)}"
