from __future__ import annotations

import re

from common.naming import generate_pack_id, pack_link, pack_suffix, transliterate


LEGAL = re.compile(r"^[A-Za-z][A-Za-z0-9_]*$")


def test_spaces_become_underscores_and_suffix_is_appended():
    assert generate_pack_id("My Pack", bot_username="flex_stickerpack_bot") == "My_Pack_by_flex_stickerpack_bot"


def test_same_name_always_gives_same_id():
    ids = {generate_pack_id("Котики и собачки", bot_username="b") for _ in range(5)}
    assert len(ids) == 1


def test_cyrillic_is_transliterated_preserving_case():
    assert transliterate("Жираф") == "Zhiraf"
    assert transliterate("щука ёж") == "schuka ezh"
    assert generate_pack_id("Мои стикеры", bot_username="b") == "Moi_stikery_by_b"


def test_signs_and_punctuation_are_dropped():
    out = generate_pack_id("Объявления!!  вау?", bot_username="b")
    assert out == "Objavlenija_vau_by_b"
    assert LEGAL.match(out)


def test_accented_latin_is_folded_not_dropped():
    assert generate_pack_id("Café Crème", bot_username="b") == "Cafe_Creme_by_b"
    # Cyrillic keeps its own mapping rather than being decomposed
    assert generate_pack_id("Йогурт", bot_username="b") == "Jogurt_by_b"


def test_leading_digit_or_empty_gets_prefix():
    assert generate_pack_id("2024 memes", bot_username="b") == "pack_2024_memes_by_b"
    assert generate_pack_id("!!!", bot_username="b") == "pack_by_b"


def test_long_names_are_truncated_to_platform_limit():
    out = generate_pack_id("x" * 200, bot_username="some_bot")
    assert len(out) == 64
    assert out.endswith("_by_some_bot")


def test_suffix_strips_at_sign():
    assert pack_suffix("@my_bot") == "_by_my_bot"


def test_pack_link():
    assert pack_link("a_by_b") == "https://t.me/addstickers/a_by_b"
