"""Forwarding rule engine: merge, prefix gating, quiet hours, rate windows, safety."""

from datetime import datetime, timezone

import pytest

from automation_rules import (
    ForwardRateLimiter,
    deep_merge,
    default_config,
    default_rule,
    is_within_quiet_hours,
    match_prefix,
    rule_for_chat,
    should_forward,
)

GROUP = "120363000000000000@g.us"
DM = "27821234567@s.whatsapp.net"
NOON_UTC = datetime(2024, 6, 1, 12, 0, tzinfo=timezone.utc)


def _config(**overrides):
    cfg = default_config()
    cfg.update({"enabled": True, "webhook_url": "https://hooks.example/relay"})
    return deep_merge(cfg, overrides)


def _record(chat=GROUP, msg_type="text", text="hello"):
    return {"id": "m1", "chat_jid": chat, "is_group": chat.endswith("@g.us"), "type": msg_type, "text": text}


def _local(hour, minute, tz="Africa/Johannesburg"):
    from zoneinfo import ZoneInfo

    return datetime(2024, 6, 1, hour, minute, tzinfo=ZoneInfo(tz))


class TestDeepMerge:
    def test_changes_only_the_overridden_leaf(self):
        base = default_rule()

        merged = deep_merge(base, {"safety": {"block_media": True}})

        assert merged["safety"] == {"allow_groups": True, "allow_dm": True, "block_media": True}
        assert {k: v for k, v in merged.items() if k != "safety"} == {
            k: v for k, v in base.items() if k != "safety"
        }
        assert base["safety"]["block_media"] is False

    def test_lists_are_replaced_not_merged(self):
        assert deep_merge({"templates": ["a", "b"]}, {"templates": ["c"]}) == {"templates": ["c"]}

    def test_non_dict_override_leaves_base(self):
        assert deep_merge({"a": 1}, None) == {"a": 1}

    def test_per_chat_override_applies_on_top_of_defaults(self):
        cfg = _config(per_chat={GROUP: {"group_mode": "all", "quiet_hours": {"enabled": True}}})

        rule = rule_for_chat(cfg, GROUP)

        assert rule["group_mode"] == "all"
        assert rule["quiet_hours"]["enabled"] is True
        assert rule["quiet_hours"]["start"] == "22:00"
        assert rule_for_chat(cfg, DM)["group_mode"] == "prefix"


class TestMatchPrefix:
    @pytest.mark.parametrize(
        "text,remainder",
        [("!bot hello", "hello"), ("!BOT: hello", "hello"), ("!bot, hi there", "hi there"), ("!bot - x", "x"), ("!bot", "")],
    )
    def test_accepted_forms(self, text, remainder):
        assert match_prefix(text, "!bot") == (True, remainder)

    def test_prefix_must_be_leading_and_separated(self):
        assert match_prefix("hello !bot", "!bot")[0] is False
        assert match_prefix("!bothello", "!bot")[0] is False

    def test_empty_prefix_always_matches(self):
        assert match_prefix("anything", "") == (True, "anything")


class TestShouldForward:
    def test_prefix_required_for_all(self):
        cfg = _config(defaults={"require_prefix_for_all": True, "group_prefix": "!bot"})

        assert should_forward(cfg, _record(text="!bot hello"), "!bot hello", ForwardRateLimiter(), NOON_UTC)
        assert not should_forward(cfg, _record(text="hello"), "hello", ForwardRateLimiter(), NOON_UTC)
        assert should_forward(cfg, _record(text="!BOT: hello"), "!BOT: hello", ForwardRateLimiter(), NOON_UTC)

    def test_disabled_or_unconfigured_never_forwards(self):
        record = _record(text="!bot hi")
        assert not should_forward(_config(enabled=False), record, "!bot hi", ForwardRateLimiter(), NOON_UTC)
        assert not should_forward(_config(webhook_url="  "), record, "!bot hi", ForwardRateLimiter(), NOON_UTC)

    def test_group_mode_all_without_global_prefix(self):
        cfg = _config(defaults={"require_prefix_for_all": False, "group_mode": "all"})

        assert should_forward(cfg, _record(text="plain"), "plain", ForwardRateLimiter(), NOON_UTC)

    def test_dm_without_global_prefix_passes(self):
        cfg = _config(defaults={"require_prefix_for_all": False, "group_mode": "prefix"})

        assert should_forward(cfg, _record(chat=DM, text="plain"), "plain", ForwardRateLimiter(), NOON_UTC)
        assert not should_forward(cfg, _record(text="plain"), "plain", ForwardRateLimiter(), NOON_UTC)

    def test_safety_toggles(self):
        limiter = ForwardRateLimiter()
        no_groups = _config(defaults={"safety": {"allow_groups": False}})
        assert not should_forward(no_groups, _record(text="!bot hi"), "!bot hi", limiter, NOON_UTC)

        no_dm = _config(defaults={"dm_enabled": False})
        assert not should_forward(no_dm, _record(chat=DM, text="!bot hi"), "!bot hi", limiter, NOON_UTC)

        no_media = _config(defaults={"safety": {"block_media": True}})
        image = _record(msg_type="image", text="[image]")
        assert not should_forward(no_media, image, "!bot look", limiter, NOON_UTC)

    def test_type_switches(self):
        cfg = _config(forward={"image": False})
        limiter = ForwardRateLimiter()

        assert not should_forward(cfg, _record(msg_type="image"), "!bot look", limiter, NOON_UTC)
        assert should_forward(cfg, _record(msg_type="document"), "!bot file", limiter, NOON_UTC)
        # video/audio etc. fall under "other", off by default
        assert not should_forward(cfg, _record(msg_type="unknown"), "!bot clip", limiter, NOON_UTC)

    def test_per_chat_disable(self):
        cfg = _config(per_chat={GROUP: {"enabled": False}})

        assert not should_forward(cfg, _record(text="!bot hi"), "!bot hi", ForwardRateLimiter(), NOON_UTC)

    def test_quiet_hours_block(self):
        cfg = _config(defaults={"quiet_hours": {"enabled": True}})

        assert not should_forward(cfg, _record(text="!bot hi"), "!bot hi", ForwardRateLimiter(), _local(23, 30))
        assert should_forward(cfg, _record(text="!bot hi"), "!bot hi", ForwardRateLimiter(), _local(12, 0))


class TestQuietHours:
    RULE = {"quiet_hours": {"enabled": True, "start": "22:00", "end": "06:00", "tz": "Africa/Johannesburg"}}

    @pytest.mark.parametrize("hour,minute,quiet", [(23, 30, True), (2, 0, True), (12, 0, False), (6, 0, False), (22, 0, True)])
    def test_overnight_window(self, hour, minute, quiet):
        assert is_within_quiet_hours(self.RULE, _local(hour, minute)) is quiet

    def test_uses_rule_timezone(self):
        # 21:30 UTC is 23:30 in Johannesburg
        assert is_within_quiet_hours(self.RULE, datetime(2024, 6, 1, 21, 30, tzinfo=timezone.utc))

    def test_same_day_window(self):
        rule = {"quiet_hours": {"enabled": True, "start": "09:00", "end": "17:00", "tz": "UTC"}}
        assert is_within_quiet_hours(rule, datetime(2024, 6, 1, 10, 0, tzinfo=timezone.utc))
        assert not is_within_quiet_hours(rule, datetime(2024, 6, 1, 18, 0, tzinfo=timezone.utc))

    def test_equal_start_and_end_is_never_quiet(self):
        rule = {"quiet_hours": {"enabled": True, "start": "08:00", "end": "08:00", "tz": "UTC"}}
        assert not is_within_quiet_hours(rule, datetime(2024, 6, 1, 8, 0, tzinfo=timezone.utc))

    def test_unknown_timezone_falls_back_to_utc(self):
        rule = {"quiet_hours": {"enabled": True, "start": "22:00", "end": "06:00", "tz": "Mars/Olympus"}}
        assert is_within_quiet_hours(rule, datetime(2024, 6, 1, 23, 0, tzinfo=timezone.utc))

    def test_disabled(self):
        assert not is_within_quiet_hours({"quiet_hours": {"enabled": False}}, _local(23, 30))


class TestForwardRateLimiter:
    RULE = {"rate_limit": {"enabled": True, "max_per_minute": 2}}

    def test_window_counts_and_resets(self):
        limiter = ForwardRateLimiter()
        t0 = 1_700_000_000_000

        assert limiter.allow(GROUP, self.RULE, t0)
        assert limiter.allow(GROUP, self.RULE, t0 + 1000)
        assert not limiter.allow(GROUP, self.RULE, t0 + 2000)
        assert limiter.allow(GROUP, self.RULE, t0 + 60_000)

    def test_burst_across_reset_allows_twice_the_limit(self):
        limiter = ForwardRateLimiter()
        t0 = 1_700_000_000_000
        results = [limiter.allow(GROUP, self.RULE, t) for t in (t0, t0 + 59_000, t0 + 60_000, t0 + 61_000)]

        assert results == [True, True, True, True]

    def test_chats_have_separate_windows(self):
        limiter = ForwardRateLimiter()
        t0 = 1_700_000_000_000
        limiter.allow(GROUP, self.RULE, t0)
        limiter.allow(GROUP, self.RULE, t0)

        assert limiter.allow(DM, self.RULE, t0)

    def test_disabled_limit_always_allows(self):
        limiter = ForwardRateLimiter()
        rule = {"rate_limit": {"enabled": False, "max_per_minute": 1}}
        assert all(limiter.allow(GROUP, rule, 0) for _ in range(5))

    def test_expired_windows_are_dropped(self):
        limiter = ForwardRateLimiter()
        t0 = 1_700_000_000_000
        for i in range(50):
            limiter.allow(f"{i}@g.us", self.RULE, t0)
        assert len(limiter) == 50

        assert limiter.allow(GROUP, self.RULE, t0 + 60_000)

        assert len(limiter) == 1
        assert limiter.window("0@g.us") is None
