"""
Text normalization for patient matching.

Produces comparable forms for Latin-script and Arabic-script input without a
language tag from the caller. Arabic letters are folded and transliterated so
that the output is always lowercase Latin letters, digits and single spaces:

    >>> normalize_text("  Mohamed-Amine  BENALI ")
    'mohamed amine benali'
    >>> normalize_text("مُحَمَّد")
    'mhmd'

Every function here is pure: no locale, no global mutable state.
"""

import re
import unicodedata
from datetime import date, datetime
from typing import Optional, Union

# Letters NFKD does not reduce to a base letter
ARABIC_FOLDING = {
    "ة": "ا",  # taa marbuta -> alef (feminine "-a" ending)
    "ى": "ا",  # alef maksura -> alef
    "ـ": "",        # tatweel
    "ء": "",        # standalone hamza
}

ARABIC_TRANSLITERATION = {
    "ا": "a",   # alef
    "ب": "b",
    "ت": "t",
    "ث": "th",
    "ج": "j",
    "ح": "h",
    "خ": "kh",
    "د": "d",
    "ذ": "dh",
    "ر": "r",
    "ز": "z",
    "س": "s",
    "ش": "sh",
    "ص": "s",
    "ض": "d",
    "ط": "t",
    "ظ": "z",
    "ع": "",    # ain carries no Latin consonant
    "غ": "gh",
    "ف": "f",
    "ق": "q",
    "ك": "k",
    "ل": "l",
    "م": "m",
    "ن": "n",
    "ه": "h",
    "پ": "b",   # peh
    "چ": "ch",  # tcheh
    "ڤ": "v",   # veh
    "گ": "g",   # gaf
    "ک": "k",   # keheh
    "ی": "y",   # farsi yeh
}

# Waw and yeh are consonants word-initially and long vowels elsewhere
ARABIC_SEMIVOWELS = {
    "و": ("w", "u"),
    "ي": ("y", "i"),
}

_NON_ALNUM = re.compile(r"[^a-z0-9]+")

DATE_FORMATS = ("%Y-%m-%d", "%d/%m/%Y", "%Y/%m/%d", "%d-%m-%Y", "%d.%m.%Y")


def _is_arabic(char: str) -> bool:
    code = ord(char)
    return (
        0x0600 <= code <= 0x06FF
        or 0x0750 <= code <= 0x077F
        or 0x08A0 <= code <= 0x08FF
        or 0xFB50 <= code <= 0xFDFF
        or 0xFE70 <= code <= 0xFEFF
    )


def detect_script(value: Optional[str]) -> str:
    """Classify text as 'latin', 'arabic', 'mixed' or 'unknown' from its letters"""
    if not value:
        return "unknown"

    arabic = latin = 0
    for char in value:
        if not char.isalpha():
            continue
        if _is_arabic(char):
            arabic += 1
        elif ord(char) < 0x0250:
            latin += 1

    if arabic and latin:
        return "mixed"
    if arabic:
        return "arabic"
    if latin:
        return "latin"
    return "unknown"


def _transliterate_arabic(text: str) -> str:
    out = []
    word_start = True
    for char in text:
        if char in ARABIC_SEMIVOWELS:
            consonant, vowel = ARABIC_SEMIVOWELS[char]
            out.append(consonant if word_start else vowel)
            word_start = False
        elif char in ARABIC_TRANSLITERATION:
            out.append(ARABIC_TRANSLITERATION[char])
            word_start = False
        else:
            out.append(char)
            word_start = not char.isalpha()
    return "".join(out)


def _ascii_digits(text: str) -> str:
    return "".join(
        str(unicodedata.digit(char)) if char.isdigit() and not char.isascii() else char
        for char in text
    )


def normalize_text(value: Optional[str]) -> str:
    """Case-fold, strip diacritics and punctuation, transliterate Arabic, collapse spaces"""
    if not value:
        return ""

    # NFKD splits hamza carriers (U+0623 -> alef + hamza above) and presentation forms
    text = unicodedata.normalize("NFKD", str(value))
    text = "".join(ch for ch in text if not unicodedata.combining(ch))

    for source, target in ARABIC_FOLDING.items():
        text = text.replace(source, target)

    if detect_script(text) in ("arabic", "mixed"):
        text = _transliterate_arabic(text)

    text = _ascii_digits(text).casefold()

    # casefold can reintroduce non-ascii (e.g. dotted i), decompose once more
    text = unicodedata.normalize("NFKD", text)
    text = "".join(ch for ch in text if not unicodedata.combining(ch))

    return _NON_ALNUM.sub(" ", text).strip()


def normalize_digits(value: Optional[str]) -> str:
    """Keep digits only (Arabic-Indic digits become ASCII)"""
    if not value:
        return ""
    return "".join(
        str(unicodedata.digit(char)) for char in str(value) if char.isdigit()
    )


def parse_date(value: Union[str, date, datetime, None]) -> Optional[date]:
    """Parse a date of birth; None when absent or unparseable"""
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value

    text = _ascii_digits(str(value).strip())
    for fmt in DATE_FORMATS:
        try:
            return datetime.strptime(text, fmt).date()
        except ValueError:
            continue
    return None
