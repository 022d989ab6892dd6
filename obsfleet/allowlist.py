"""
Metric allow-lists decide which series the spoke collectors forward to the hub. The hub ships a default list; an
administrator may extend or shrink it with a custom list in which entries prefixed with "-" remove defaults.
"""
import logging
from dataclasses import dataclass, field
from typing import Optional

import yaml

logger = logging.getLogger("obsfleet.allowlist")

ALLOWLIST_CONFIGMAP = "observability-metrics-allowlist"
CUSTOM_ALLOWLIST_CONFIGMAP = "observability-metrics-custom-allowlist"
ALLOWLIST_KEY = "metrics_list.yaml"

DELETE_PREFIX = "-"


class AllowlistError(ValueError):
    pass


@dataclass
class MetricsAllowlist:
    names: list = field(default_factory=lambda: [])
    matches: list = field(default_factory=lambda: [])
    renames: dict = field(default_factory=lambda: {})
    recording_rules: Optional[list] = field(default_factory=lambda: None)
    # deprecated spelling of recording_rules
    rules: list = field(default_factory=lambda: [])
    collect_rules: list = field(default_factory=lambda: [])

    def to_dict(self) -> dict:
        data = {"names": list(self.names)}
        if self.matches:
            data["matches"] = list(self.matches)
        if self.renames:
            data["renames"] = dict(self.renames)
        if self.recording_rules:
            data["recording_rules"] = list(self.recording_rules)
        if self.collect_rules:
            data["collect_rules"] = list(self.collect_rules)
        return data


def _expect(value, _type, key):
    if value is None:
        return _type()
    if not isinstance(value, _type):
        raise AllowlistError(f"'{key}' must be a {_type.__name__}, got {type(value).__name__}")
    return value


def parse_allowlist(text: Optional[str]) -> MetricsAllowlist:
    """
    It parses the YAML document of an allow-list configmap

    :param text: the YAML document
    :return: the parsed allow-list
    """
    if not text:
        return MetricsAllowlist()
    try:
        data = yaml.safe_load(text)
    except yaml.YAMLError as e:
        raise AllowlistError(f"Malformed allow-list: {e}") from None
    if data is None:
        return MetricsAllowlist()
    if not isinstance(data, dict):
        raise AllowlistError("An allow-list must be a mapping")

    recording_rules = data.get("recording_rules")
    if recording_rules is not None:
        recording_rules = _expect(recording_rules, list, "recording_rules")
    for rule in (recording_rules or []) + _expect(data.get("rules"), list, "rules"):
        if not isinstance(rule, dict) or not isinstance(rule.get("record"), str):
            raise AllowlistError(f"Invalid recording rule: {rule}")
    for group in _expect(data.get("collect_rules"), list, "collect_rules"):
        if not isinstance(group, dict) or not isinstance(group.get("group"), str) or not group["group"]:
            raise AllowlistError(f"Invalid collect rule group: {group}")

    return MetricsAllowlist(
        names=[str(n) for n in _expect(data.get("names"), list, "names")],
        matches=[str(m) for m in _expect(data.get("matches"), list, "matches")],
        renames=_expect(data.get("renames"), dict, "renames"),
        recording_rules=recording_rules,
        rules=_expect(data.get("rules"), list, "rules"),
        collect_rules=_expect(data.get("collect_rules"), list, "collect_rules"),
    )


def merge_metrics(default: list, custom: list) -> list:
    """
    Custom entries are appended to the defaults, entries prefixed with "-" are removed; the result keeps the order
    of first occurrence and contains no duplicates

    :param default: the default entries
    :param custom: the custom entries
    :return: the merged entries
    """
    deleted = {entry[len(DELETE_PREFIX):] for entry in custom if entry.startswith(DELETE_PREFIX)}
    merged = []
    for entry in list(default) + [c for c in custom if not c.startswith(DELETE_PREFIX)]:
        if entry in deleted or entry in merged:
            continue
        merged.append(entry)
    return merged


def merge_recording_rules(default: list, custom: list) -> list:
    deleted = {
        rule["record"][len(DELETE_PREFIX):]
        for rule in custom
        if rule["record"].startswith(DELETE_PREFIX)
    }
    merged = []
    seen = set()
    for rule in list(default) + [r for r in custom if not r["record"].startswith(DELETE_PREFIX)]:
        if rule["record"] in deleted or rule["record"] in seen:
            continue
        seen.add(rule["record"])
        merged.append(rule)
    return merged


def merge_collect_rule_groups(default: list, custom: list) -> list:
    """
    Custom groups come first; a custom group named "-<group>" removes the default group of that name and a custom
    group replaces a default group of the same name
    """
    deleted = {g["group"][len(DELETE_PREFIX):] for g in custom if g["group"].startswith(DELETE_PREFIX)}
    merged = [g for g in custom if not g["group"].startswith(DELETE_PREFIX)]
    taken = {g["group"] for g in merged}
    for group in default:
        if group["group"] in deleted or group["group"] in taken:
            continue
        merged.append(group)
    return merged


def merge_allowlist(default: MetricsAllowlist, custom: Optional[MetricsAllowlist]) -> MetricsAllowlist:
    default_rules = default.recording_rules if default.recording_rules is not None else default.rules
    if custom is None:
        return MetricsAllowlist(
            names=merge_metrics(default.names, []),
            matches=merge_metrics(default.matches, []),
            renames=dict(default.renames),
            recording_rules=merge_recording_rules(default_rules, []),
            collect_rules=list(default.collect_rules),
        )
    custom_rules = custom.recording_rules if custom.recording_rules is not None else custom.rules
    return MetricsAllowlist(
        names=merge_metrics(default.names, custom.names),
        matches=merge_metrics(default.matches, custom.matches),
        renames={**default.renames, **custom.renames},
        recording_rules=merge_recording_rules(default_rules, custom_rules),
        collect_rules=merge_collect_rule_groups(default.collect_rules, custom.collect_rules),
    )


def dump_allowlist(allowlist: MetricsAllowlist) -> str:
    return yaml.safe_dump(allowlist.to_dict(), sort_keys=False, default_flow_style=False)
