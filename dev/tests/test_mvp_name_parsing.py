import sys
from pathlib import Path

import pytest

ROOT = Path(__file__).resolve().parents[2]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))


def test_regions_and_revision() -> None:
    from romcurator.core.name_parsing import parse_release_info

    info = parse_release_info("Foo (USA, Europe) (Rev 1)")

    assert info.regions == ("USA", "EUR")
    assert info.revision == "Rev 1"
    assert info.flags == ()
    assert info.effective_languages == ("en",)


def test_explicit_languages_win_over_implied() -> None:
    from romcurator.core.name_parsing import parse_release_info

    info = parse_release_info("Foo (Japan) (En,Ja) (Beta)")

    assert info.regions == ("JPN",)
    assert info.languages == ("en", "ja")
    assert info.effective_languages == ("en", "ja")
    assert info.flags == ("beta",)


def test_release_records_merge_with_name() -> None:
    from romcurator.core.name_parsing import parse_release_info

    info = parse_release_info("Foo", extra_regions=["Europe"], extra_languages=["fr,de"])

    assert info.regions == ("EUR",)
    assert info.languages == ("fr", "de")


@pytest.mark.parametrize(
    "name,flags",
    [
        ("Foo (USA) (Proto)", ("prototype",)),
        ("Foo (USA) (Unl)", ("unlicensed",)),
        ("Foo (World) (Aftermarket) (Unl)", ("aftermarket", "unlicensed")),
        ("Foo (Europe) (Demo) (Kiosk)", ("demo",)),
        ("Foo (USA) (Sample)", ("sample",)),
    ],
)
def test_flags(name, flags) -> None:
    from romcurator.core.name_parsing import parse_release_info

    assert parse_release_info(name).flags == flags


def test_demotion_key_orders_by_worst_flag() -> None:
    from romcurator.core.name_parsing import parse_release_info

    clean = parse_release_info("Foo (USA)").demotion_key
    aftermarket = parse_release_info("Foo (USA) (Aftermarket)").demotion_key
    beta = parse_release_info("Foo (USA) (Beta)").demotion_key
    demo = parse_release_info("Foo (USA) (Demo)").demotion_key
    unl_beta = parse_release_info("Foo (USA) (Unl) (Beta)").demotion_key

    assert clean == (0, 0)
    assert clean < aftermarket < beta < unl_beta < demo


def test_revision_key_is_numeric_aware() -> None:
    from romcurator.core.name_parsing import revision_key

    assert revision_key(None) < revision_key("Rev 1")
    assert revision_key("Rev 1") < revision_key("Rev 2")
    assert revision_key("v1.9") < revision_key("v1.10")
    assert revision_key("Rev A") < revision_key("Rev B")


def test_unknown_parenthetical_ignored() -> None:
    from romcurator.core.name_parsing import parse_release_info

    info = parse_release_info("Foo (Disc 1) (Mario Edition)")

    assert info.regions == ()
    assert info.languages == ()
    assert info.revision is None
