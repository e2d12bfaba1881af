"""Automation config document: defaults, backfill, secret masking, per-chat overrides."""

import json

from automation_config import SECRET_MASK, AutomationConfigStore

GROUP = "120363000000000000@g.us"


def test_missing_document_loads_defaults(temp_dir):
    store = AutomationConfigStore(temp_dir / "automations.json")

    cfg = store.load()

    assert cfg["forward"] == {"text": True, "image": True, "document": True, "other": False}
    assert cfg["defaults"]["group_prefix"] == "!bot"
    assert cfg["per_chat"] == {}


def test_partial_document_is_backfilled(temp_dir):
    path = temp_dir / "automations.json"
    path.write_text(json.dumps({"enabled": True, "webhook_url": "https://hooks.example", "defaults": {"group_mode": "all"}}))

    cfg = AutomationConfigStore(path).load()

    assert cfg["enabled"] is True
    assert cfg["defaults"]["group_mode"] == "all"
    assert cfg["defaults"]["rate_limit"] == {"enabled": True, "max_per_minute": 30}


def test_malformed_document_falls_back_to_defaults(temp_dir):
    path = temp_dir / "automations.json"
    path.write_text("[1, 2")

    cfg = AutomationConfigStore(path).load()

    assert cfg["defaults"]["enabled"] is True


def test_secret_is_masked_and_kept(temp_dir):
    store = AutomationConfigStore(temp_dir / "automations.json")
    store.load()
    store.update({"shared_secret": "s3cret", "webhook_url": "https://hooks.example"})

    assert store.masked()["shared_secret"] == SECRET_MASK
    assert store.config["shared_secret"] == "s3cret"

    store.update({"shared_secret": SECRET_MASK, "enabled": False})
    assert store.shared_secret == "s3cret"

    store.update({"forward": {"image": False}})
    assert store.shared_secret == "s3cret"
    assert store.config["forward"]["text"] is True


def test_update_preserves_per_chat_and_persists(temp_dir):
    path = temp_dir / "automations.json"
    store = AutomationConfigStore(path)
    store.load()
    store.set_chat_rule(GROUP, {"group_mode": "all"})

    store.update({"defaults": {"quiet_hours": {"enabled": True}}})

    on_disk = json.loads(path.read_text())
    assert on_disk["per_chat"][GROUP] == {"group_mode": "all"}
    assert on_disk["defaults"]["quiet_hours"]["enabled"] is True
    assert on_disk["defaults"]["quiet_hours"]["start"] == "22:00"


def test_chat_rule_merge_and_delete(temp_dir):
    store = AutomationConfigStore(temp_dir / "automations.json")
    store.load()

    store.set_chat_rule(GROUP, {"rate_limit": {"max_per_minute": 5}})
    store.set_chat_rule(GROUP, {"group_prefix": "!ops"})

    rule = store.rule_for(GROUP)
    assert rule["rate_limit"] == {"enabled": True, "max_per_minute": 5}
    assert rule["group_prefix"] == "!ops"

    assert store.delete_chat_rule(GROUP) is True
    assert store.delete_chat_rule(GROUP) is False
    assert store.rule_for(GROUP)["group_prefix"] == "!bot"
