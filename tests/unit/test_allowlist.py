import pytest

from obsfleet.allowlist import (
    AllowlistError,
    MetricsAllowlist,
    dump_allowlist,
    merge_allowlist,
    merge_collect_rule_groups,
    merge_metrics,
    parse_allowlist,
)


def test_merge_metrics():
    assert merge_metrics(["a", "b"], ["c", "-b"]) == ["a", "c"]
    assert merge_metrics(["a", "a"], ["a", "-b"]) == ["a"]
    assert merge_metrics([], ["-a"]) == []
    assert merge_metrics(["b", "a"], ["a", "c", "b"]) == ["b", "a", "c"]


def test_parse_allowlist():
    allowlist = parse_allowlist(
        """
names:
- up
- cluster_version
matches:
- __name__="workqueue_depth"
renames:
  a: b
recording_rules:
- record: r1
  expr: sum(up)
"""
    )
    assert allowlist.names == ["up", "cluster_version"]
    assert allowlist.matches == ['__name__="workqueue_depth"']
    assert allowlist.renames == {"a": "b"}
    assert allowlist.recording_rules == [{"record": "r1", "expr": "sum(up)"}]

    assert parse_allowlist("") == MetricsAllowlist()
    with pytest.raises(AllowlistError):
        parse_allowlist("names: [unclosed")
    with pytest.raises(AllowlistError):
        parse_allowlist("- just\n- a list\n")
    with pytest.raises(AllowlistError):
        parse_allowlist("names: up")
    with pytest.raises(AllowlistError):
        parse_allowlist("recording_rules:\n- expr: sum(up)\n")


def test_merge_allowlist():
    default = MetricsAllowlist(
        names=["a", "b"],
        matches=["m1"],
        renames={"x": "y", "k": "v"},
        recording_rules=[{"record": "r1", "expr": "1"}, {"record": "r2", "expr": "2"}],
    )
    custom = MetricsAllowlist(
        names=["c", "-b"],
        matches=["m2", "m1"],
        renames={"x": "z"},
        recording_rules=[{"record": "-r2", "expr": ""}, {"record": "r3", "expr": "3"}],
    )
    merged = merge_allowlist(default, custom)
    assert merged.names == ["a", "c"]
    assert merged.matches == ["m1", "m2"]
    assert merged.renames == {"x": "z", "k": "v"}
    assert [r["record"] for r in merged.recording_rules] == ["r1", "r3"]

    # without a custom allow-list the default is returned de-duplicated
    merged = merge_allowlist(MetricsAllowlist(names=["a", "a"]), None)
    assert merged.names == ["a"]


def test_legacy_rules():
    default = MetricsAllowlist(rules=[{"record": "r1", "expr": "1"}])
    custom = MetricsAllowlist(rules=[{"record": "r2", "expr": "2"}])
    merged = merge_allowlist(default, custom)
    assert [r["record"] for r in merged.recording_rules] == ["r1", "r2"]


def test_merge_collect_rules():
    default = [{"group": "g1", "rules": [1]}, {"group": "g2", "rules": [2]}]
    custom = [{"group": "-g1"}, {"group": "g2", "rules": [22]}, {"group": "g3", "rules": [3]}]
    merged = merge_collect_rule_groups(default, custom)
    assert merged == [{"group": "g2", "rules": [22]}, {"group": "g3", "rules": [3]}]


def test_dump_allowlist():
    allowlist = MetricsAllowlist(names=["up"], renames={"a": "b"})
    text = dump_allowlist(allowlist)
    assert text.startswith("names:")
    assert parse_allowlist(text).names == ["up"]
    assert "recording_rules" not in text


def test_rule_names_must_be_strings():
    default = parse_allowlist("names: [up]")
    for text in [
        "recording_rules:\n- record: 5\n  expr: up\n",
        "rules:\n- record: [a, b]\n  expr: up\n",
        "collect_rules:\n- group: 7\n  rules: []\n",
        "collect_rules:\n- group: {name: a}\n",
    ]:
        with pytest.raises(AllowlistError):
            merge_allowlist(default, parse_allowlist(text))
