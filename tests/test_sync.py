# SPDX-License-Identifier: Apache-2.0
# Copyright (c) 2025 Eul Bite

"""Tests for organization config sync."""

import pytest

from limacharlie.errors import DecodeError, InvalidOptionsError, SyncError
from limacharlie.sync import (
    OrgConfig,
    SyncOptions,
    fetch,
    load_org_config,
    loads_org_config,
    push,
    push_from_files,
)

from .conftest import OID

FULL_CONFIG = """
version: 3
resources:
  api:
    - insight
rules:
  suspicious-exec:
    detect:
      event: NEW_PROCESS
      op: ends with
      path: event/FILE_PATH
      value: evil.exe
    respond:
      - action: report
        name: suspicious-exec
  managed-rule:
    namespace: managed
    detect:
      event: DNS_REQUEST
      op: is
      path: event/DOMAIN_NAME
      value: bad.example.com
    respond:
      - action: report
        name: bad-dns
fps:
  noisy-host:
    data:
      op: is
      path: routing/hostname
      value: build-01
outputs:
  siem:
    module: syslog
    type: detect
    dest_host: siem.example.com:6514
    is_tls: true
integrity:
  etc-watch:
    patterns:
      - /etc/*
    tags: []
    platforms:
      - linux
artifact:
  syslogs:
    patterns:
      - /var/log/syslog
    is_delete_after: false
    is_ignore_cert: false
    days_retention: 30
    tags: []
    platforms:
      - linux
exfil:
  list:
    proc-events:
      events:
        - NEW_PROCESS
        - TERMINATE_PROCESS
      filters:
        tags: []
        platforms:
          - windows
  watch:
    evil-watch:
      event: NEW_PROCESS
      value: evil.exe
      path:
        - event
        - FILE_PATH
      operator: ends with
      filters:
        tags: []
        platforms: []
net-policy:
  block-bad:
    type: firewall
    policy:
      bpf_filter: host 203.0.113.7
      is_allow: false
    expires_on: 0
hives:
  lookup:
    bad-domains:
      data:
        lookup_data:
          bad.example.com: {}
      usr_mtd:
        enabled: true
        expiry: 0
        tags:
          - intel
        comment: ''
"""


def three_rules() -> OrgConfig:
    return loads_org_config(
        "version: 3\n"
        "rules:\n"
        + "".join(
            f"  r{i}:\n    detect: {{event: NEW_PROCESS, op: is, path: event/N, value: '{i}'}}\n"
            "    respond: [{action: report, name: r}]\n"
            for i in (1, 2, 3)
        )
    )


def names(ops, **flags) -> list[str]:
    out = []
    for op in ops:
        if flags.get("added") and not op.is_added:
            continue
        if flags.get("removed") and not op.is_removed:
            continue
        if flags.get("present") and not op.is_present:
            continue
        out.append(op.element_name)
    return out


# =============================================================================
# D&R rules
# =============================================================================


@pytest.mark.asyncio
async def test_dry_run_reports_without_writing(fake, client):
    """Three new rules in dry-run mode: three additions, remote unchanged."""
    before = fake.all_state()

    ops = await push(client, three_rules(), SyncOptions(dr_rules=True, dry_run=True))

    assert [(op.element_type, op.element_name, op.is_added) for op in ops] == [
        ("dr-rule", "r1", True),
        ("dr-rule", "r2", True),
        ("dr-rule", "r3", True),
    ]
    assert fake.all_state() == before


@pytest.mark.asyncio
async def test_push_then_push_again_is_idempotent(fake, client):
    first = await push(client, three_rules(), SyncOptions(dr_rules=True))
    second = await push(client, three_rules(), SyncOptions(dr_rules=True))

    assert names(first, added=True) == ["r1", "r2", "r3"]
    assert sorted(fake.dr_rules["general"]) == ["r1", "r2", "r3"]
    assert all(op.is_present for op in second)
    assert len(second) == 3


@pytest.mark.asyncio
async def test_changed_rule_is_replaced(fake, client):
    await push(client, three_rules(), SyncOptions(dr_rules=True))
    config = three_rules()
    config.dr_rules["r2"].respond = [{"action": "report", "name": "changed"}]

    ops = await push(client, config, SyncOptions(dr_rules=True))

    assert names(ops, added=True) == ["r2"]
    assert fake.dr_rules["general"]["r2"]["respond"] == [{"action": "report", "name": "changed"}]


@pytest.mark.asyncio
async def test_force_removes_unlisted_rules(fake, client):
    fake.dr_rules["general"]["old"] = {"detect": {"op": "is"}, "respond": []}
    fake.dr_rules["managed"]["old-managed"] = {"detect": {"op": "is"}, "respond": []}

    ops = await push(client, three_rules(), SyncOptions(dr_rules=True, force=True))

    assert sorted(names(ops, removed=True)) == ["old", "old-managed"]
    assert "old" not in fake.dr_rules["general"]
    assert "old-managed" not in fake.dr_rules["managed"]


@pytest.mark.asyncio
async def test_without_force_nothing_is_removed(fake, client):
    fake.dr_rules["general"]["old"] = {"detect": {"op": "is"}, "respond": []}

    ops = await push(client, three_rules(), SyncOptions(dr_rules=True))

    assert names(ops, removed=True) == []
    assert "old" in fake.dr_rules["general"]


@pytest.mark.asyncio
async def test_reserved_rules_untouched(fake, client):
    fake.dr_rules["general"]["__internal"] = {"detect": {"op": "is"}, "respond": []}

    ops = await push(client, three_rules(), SyncOptions(dr_rules=True, force=True))

    assert "__internal" not in names(ops)
    assert "__internal" in fake.dr_rules["general"]


@pytest.mark.asyncio
async def test_rule_moved_between_namespaces(fake, client):
    await push(client, three_rules(), SyncOptions(dr_rules=True))
    config = three_rules()
    config.dr_rules["r1"].namespace = "managed"

    ops = await push(client, config, SyncOptions(dr_rules=True))

    assert names(ops, added=True) == ["r1"]
    assert "r1" not in fake.dr_rules["general"]
    assert "r1" in fake.dr_rules["managed"]


@pytest.mark.asyncio
async def test_rule_expiry_is_sent(fake, client):
    config = loads_org_config(
        "version: 3\nrules:\n  temp:\n    detect: {op: is}\n    respond: []\n    expire_on: 1773563700\n"
    )

    await push(client, config, SyncOptions(dr_rules=True))

    assert fake.dr_rules["general"]["temp"]["expire_on"] == 1773563700


# =============================================================================
# Other sections
# =============================================================================


@pytest.mark.asyncio
async def test_push_all_sections_then_fetch_round_trips(fake, client):
    config = loads_org_config(FULL_CONFIG)

    ops = await push(client, config, SyncOptions.all_sections())
    fetched = await fetch(client, SyncOptions.all_sections(hive_names=["lookup"]))

    assert all(op.is_added for op in ops)
    assert fetched.to_dict() == config.to_dict()


@pytest.mark.asyncio
async def test_second_full_push_reports_only_present(fake, client):
    config = loads_org_config(FULL_CONFIG)
    await push(client, config, SyncOptions.all_sections())
    before = fake.all_state()

    ops = await push(client, config, SyncOptions.all_sections(force=True))

    assert ops
    assert [str(op) for op in ops if not op.is_present] == []
    assert fake.all_state() == before


@pytest.mark.asyncio
async def test_operations_follow_section_order(fake, client):
    ops = await push(client, loads_org_config(FULL_CONFIG), SyncOptions.all_sections())

    types = []
    for op in ops:
        if op.element_type not in types:
            types.append(op.element_type)
    assert types == [
        "resource", "dr-rule", "fp-rule", "output", "integrity",
        "artifact", "exfil-watch", "exfil-list", "net-policy", "hive",
    ]


@pytest.mark.asyncio
async def test_outputs_force_removal(fake, client):
    fake.outputs["stale"] = {"name": "stale", "module": "s3", "type": "event", "bucket": "b"}
    config = loads_org_config(FULL_CONFIG)

    ops = await push(client, config, SyncOptions(outputs=True, force=True))

    assert names(ops, removed=True) == ["stale"]
    assert sorted(fake.outputs) == ["siem"]
    assert fake.outputs["siem"]["dest_host"] == "siem.example.com:6514"


@pytest.mark.asyncio
async def test_output_numbers_compare_as_text(fake, client):
    config = loads_org_config(
        "version: 3\noutputs:\n  s3:\n    module: s3\n    type: event\n    sec_per_file: 300\n"
    )
    await push(client, config, SyncOptions(outputs=True))

    ops = await push(client, config, SyncOptions(outputs=True))

    assert ops[0].is_present


@pytest.mark.asyncio
async def test_resources_only_managed_categories_removed(fake, client):
    fake.resources = {"api": ["insight", "vt"], "replicant": ["yara"]}
    config = loads_org_config("version: 3\nresources:\n  api:\n    - insight\n")

    ops = await push(client, config, SyncOptions(resources=True, force=True))

    assert names(ops, removed=True) == ["api/vt"]
    assert names(ops, present=True) == ["api/insight"]
    assert fake.resources == {"api": ["insight"], "replicant": ["yara"]}


@pytest.mark.asyncio
async def test_net_policy_uses_unversioned_root(fake, client):
    await push(client, loads_org_config(FULL_CONFIG), SyncOptions(net_policies=True))

    policy = fake.net_policies["block-bad"]
    assert policy["oid"] == OID
    assert policy["policy"] == {"bpf_filter": "host 203.0.113.7", "is_allow": False}
    assert fake.calls["net_policy"] == 2


@pytest.mark.asyncio
async def test_exfil_removal(fake, client):
    fake.exfil["watch"]["old-watch"] = {"event": "X", "value": "1", "path": [], "operator": "is"}
    fake.exfil["list"]["old-list"] = {"events": ["X"]}

    ops = await push(client, loads_org_config(FULL_CONFIG), SyncOptions(exfil=True, force=True))

    assert names(ops, removed=True) == ["old-watch", "old-list"]
    assert sorted(fake.exfil["watch"]) == ["evil-watch"]
    assert sorted(fake.exfil["list"]) == ["proc-events"]


# =============================================================================
# Failures
# =============================================================================


@pytest.mark.asyncio
async def test_failed_write_keeps_partial_operations(fake, client):
    config = loads_org_config(FULL_CONFIG)
    fake.scripted["fp"] = [(200, {}, {}), (400, {"error": "bad rule"}, {})]

    with pytest.raises(SyncError) as exc:
        await push(client, config, SyncOptions(dr_rules=True, fp_rules=True))

    assert exc.value.section == "fp-rules"
    assert "bad rule" in str(exc.value)
    assert names(exc.value.operations) == ["suspicious-exec", "managed-rule"]
    assert exc.value.__cause__ is not None


@pytest.mark.asyncio
async def test_inaccessible_section_fails_by_default(fake, client):
    fake.scripted["outputs"] = [(403, {"error": "forbidden"}, {})]

    with pytest.raises(SyncError) as exc:
        await push(client, loads_org_config(FULL_CONFIG), SyncOptions(outputs=True))

    assert exc.value.section == "outputs"


@pytest.mark.asyncio
async def test_ignore_inaccessible_skips_section(fake, client):
    fake.scripted["outputs"] = [(403, {"error": "forbidden"}, {})]
    options = SyncOptions(outputs=True, fp_rules=True, ignore_inaccessible=True)

    ops = await push(client, loads_org_config(FULL_CONFIG), options)

    assert [op.element_type for op in ops] == ["fp-rule"]
    assert fake.outputs == {}


@pytest.mark.asyncio
async def test_no_dr_namespace_permission(fake, client):
    fake.who = {"ident": "limited", "orgs": [OID], "perms": ["output.list"]}

    with pytest.raises(SyncError, match="no accessible D&R namespace"):
        await push(client, three_rules(), SyncOptions(dr_rules=True))

    ops = await push(client, three_rules(), SyncOptions(dr_rules=True, ignore_inaccessible=True))
    assert ops == []


@pytest.mark.asyncio
async def test_no_section_selected(client):
    with pytest.raises(InvalidOptionsError):
        await push(client, three_rules(), SyncOptions(force=True))


def test_sync_options_validate():
    with pytest.raises(InvalidOptionsError) as exc:
        SyncOptions().validate()

    assert exc.value.field == "sections"
    assert SyncOptions.all_sections(hives=False).validate().dr_rules


# =============================================================================
# Config files
# =============================================================================


def test_version_required():
    with pytest.raises(InvalidOptionsError, match="invalid version found"):
        loads_org_config("rules: {}\n", "org.yaml")


def test_version_too_new():
    with pytest.raises(InvalidOptionsError, match="version not supported"):
        loads_org_config("version: 4\n")


def test_section_must_be_mapping():
    with pytest.raises(DecodeError):
        loads_org_config("version: 3\nrules: [a, b]\n")


def test_includes_are_merged(tmp_path):
    (tmp_path / "org.yaml").write_text(
        "version: 3\n"
        "include:\n  - common/outputs.yaml\n"
        "resources:\n  api: [insight]\n"
        "rules:\n  r1: {detect: {op: is}, respond: []}\n"
    )
    (tmp_path / "common").mkdir()
    (tmp_path / "common" / "outputs.yaml").write_text(
        "version: 3\n"
        "include: [rules.yaml]\n"
        "resources:\n  api: [vt]\n"
        "outputs:\n  siem: {module: syslog, type: detect, dest_host: 'h:1'}\n"
    )
    (tmp_path / "common" / "rules.yaml").write_text(
        "version: 3\nrules:\n  r1: {detect: {op: contains}, respond: []}\n"
    )

    config = load_org_config(str(tmp_path / "org.yaml"))

    assert config.resources == {"api": ["insight", "vt"]}
    assert sorted(config.outputs) == ["siem"]
    # Included files win over the including one.
    assert config.dr_rules["r1"].detect == {"op": "contains"}


def test_include_cycle_detected(tmp_path):
    (tmp_path / "a.yaml").write_text("version: 3\ninclude: [b.yaml]\n")
    (tmp_path / "b.yaml").write_text("version: 3\ninclude: [a.yaml]\n")

    with pytest.raises(InvalidOptionsError, match="include cycle"):
        load_org_config(str(tmp_path / "a.yaml"))


def test_included_file_needs_version(tmp_path):
    (tmp_path / "a.yaml").write_text("version: 3\ninclude: [b.yaml]\n")
    (tmp_path / "b.yaml").write_text("rules: {}\n")

    with pytest.raises(InvalidOptionsError, match="invalid version"):
        load_org_config(str(tmp_path / "a.yaml"))


def test_missing_include(tmp_path):
    (tmp_path / "a.yaml").write_text("version: 3\ninclude: [nope.yaml]\n")

    with pytest.raises(InvalidOptionsError, match="cannot read config"):
        load_org_config(str(tmp_path / "a.yaml"))


def test_custom_include_loader():
    files = {
        "root": b"version: 3\ninclude: [child]\n",
        "child": b"version: 3\nfps:\n  f1: {data: {op: is}}\n",
    }

    config = load_org_config("root", include_loader=lambda parent, path: files[path])

    assert config.fp_rules["f1"].data == {"op": "is"}


def test_config_yaml_round_trip():
    config = loads_org_config(FULL_CONFIG)

    assert loads_org_config(config.to_yaml()).to_dict() == config.to_dict()


@pytest.mark.asyncio
async def test_push_from_files(fake, client, tmp_path):
    path = tmp_path / "org.yaml"
    path.write_text("version: 3\nfps:\n  f1:\n    data: {op: is, path: routing/hostname, value: h}\n")

    ops = await push_from_files(client, str(path), SyncOptions(fp_rules=True))

    assert names(ops, added=True) == ["f1"]
    assert fake.fp_rules["f1"] == {"op": "is", "path": "routing/hostname", "value": "h"}
