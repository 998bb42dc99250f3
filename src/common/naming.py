from __future__ import annotations

import re
import unicodedata
from typing import Dict


DEFAULT_BOT_USERNAME = "flex_stickerpack_bot"
MAX_PACK_ID_LENGTH = 64

# Russian and Ukrainian Cyrillic -> Latin. Hard and soft signs have no
# legal counterpart in a set name, so they vanish.
_CYRILLIC: Dict[str, str] = {
    "а": "a", "б": "b", "в": "v", "г": "g", "д": "d", "е": "e", "ё": "e",
    "ж": "zh", "з": "z", "и": "i", "й": "j", "к": "k", "л": "l", "м": "m",
    "н": "n", "о": "o", "п": "p", "р": "r", "с": "s", "т": "t", "у": "u",
    "ф": "f", "х": "h", "ц": "ts", "ч": "ch", "ш": "sh", "щ": "sch",
    "ъ": "", "ы": "y", "ь": "", "э": "e", "ю": "ju", "я": "ja",
    "ґ": "g", "є": "je", "і": "i", "ї": "ji",
}

_ILLEGAL_RE = re.compile(r"[^A-Za-z0-9_]")
_UNDERSCORES_RE = re.compile(r"_+")


def pack_suffix(bot_username: str) -> str:
    """Namespacing suffix Telegram requires on every set created by a bot."""
    return f"_by_{bot_username.strip().lstrip('@')}"


def transliterate(text: str) -> str:
    out = []
    for ch in text:
        lower = ch.lower()
        latin = _CYRILLIC.get(lower)
        if latin is None:
            out.append(ch)
        elif ch != lower:
            out.append(latin.capitalize())
        else:
            out.append(latin)
    return "".join(out)


def generate_pack_id(display_name: str, *, bot_username: str = DEFAULT_BOT_USERNAME) -> str:
    """
    Map a user-chosen display name to a Telegram-legal sticker set name.

    Steps
    - spaces become underscores, Cyrillic is transliterated to Latin and
      accented Latin letters are folded to their base letter ("Café" -> "Cafe");
    - anything outside [A-Za-z0-9_] is dropped and underscore runs collapsed;
    - a base that does not start with a letter gets a "pack_" prefix;
    - the base is truncated so that base + suffix fits in 64 characters.

    Identical input always yields identical output. Uniqueness is not
    enforced here; see `state.registry.PackRegistry`.
    """
    base = transliterate(display_name.replace(" ", "_"))
    # NFKD splits accents off as combining marks, which the filter then drops
    base = unicodedata.normalize("NFKD", base)
    base = _ILLEGAL_RE.sub("", base)
    base = _UNDERSCORES_RE.sub("_", base).strip("_")
    if not base:
        base = "pack"
    elif not base[0].isalpha():
        base = f"pack_{base}"

    suffix = pack_suffix(bot_username)
    room = max(1, MAX_PACK_ID_LENGTH - len(suffix))
    base = base[:room].rstrip("_")
    return f"{base}{suffix}"


def pack_link(generated_id: str) -> str:
    return f"https://t.me/addstickers/{generated_id}"


__all__ = [
    "DEFAULT_BOT_USERNAME",
    "generate_pack_id",
    "pack_link",
    "pack_suffix",
    "transliterate",
]
