from __future__ import annotations

from echgui.types import DEFAULT_ROUTING_MODE, FormDraft, ServerProfile


def test_missing_routing_mode_defaults_to_bypass_cn() -> None:
    profile = ServerProfile.from_dict({"id": "a", "name": "A"})
    assert profile.routing_mode == DEFAULT_ROUTING_MODE == "bypass_cn"
    assert FormDraft.from_profile(profile).routing_mode == "bypass_cn"

    empty = ServerProfile.from_dict({"id": "b", "name": "B", "routing_mode": ""})
    assert empty.routing_mode == "bypass_cn"


def test_unknown_fields_survive_round_trip() -> None:
    data = {"id": "a", "name": "A", "server": "x:443", "note": {"k": 1}}
    assert ServerProfile.from_dict(data).to_dict()["note"] == {"k": 1}


def test_merge_overlays_only_editable_fields() -> None:
    profile = ServerProfile.from_dict(
        {"id": "a", "name": "A", "server": "x:443", "listen": "127.0.0.1:1", "routing_mode": "global", "note": "n"}
    )
    draft = FormDraft.from_profile(profile)
    draft.listen = "127.0.0.1:2"
    draft.routing_mode = None

    merged = draft.merged_onto(profile)
    assert merged.id == "a" and merged.name == "A"
    assert merged.server == "x:443"
    assert merged.listen == "127.0.0.1:2"
    assert merged.routing_mode == "bypass_cn"
    assert merged.extra == {"note": "n"}
    # The source profile is left alone
    assert profile.listen == "127.0.0.1:1"
