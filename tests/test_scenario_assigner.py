"""Tests for deterministic condition assignment and the development override."""

import hashlib

import pytest

from tutorlab.errors import NotPermitted
from tutorlab.models.flow import CONDITIONS, Condition
from tutorlab.services.scenario_assigner import ScenarioAssigner, hash_condition


class TestHashCondition:
    def test_matches_sha256_prefix(self):
        for pid in ["abc123", "participant-7", "", "ünïcødé"]:
            digest = hashlib.sha256(pid.encode("utf-8")).digest()
            expected = CONDITIONS[int.from_bytes(digest[:8], "big") % 4]
            assert hash_condition(pid) == expected

    def test_stable_across_instances(self):
        a = ScenarioAssigner(development=False)
        b = ScenarioAssigner(development=True)
        for i in range(50):
            pid = f"user-{i}"
            assert a.assign(pid) == b.assign(pid) == hash_condition(pid)

    def test_all_conditions_reachable(self):
        seen = {hash_condition(f"p{i}") for i in range(400)}
        assert seen == set(CONDITIONS)

    def test_never_raises_on_odd_identifiers(self):
        assert hash_condition("\ud800") in CONDITIONS
        assert hash_condition("x" * 10000) in CONDITIONS


class TestOverride:
    def test_override_forbidden_outside_development(self):
        assigner = ScenarioAssigner(development=False)
        with pytest.raises(NotPermitted):
            assigner.override("abc123", Condition.SOLO)
        assert assigner.assign("abc123") == hash_condition("abc123")

    def test_override_wins_in_development(self):
        assigner = ScenarioAssigner(development=True)
        natural = assigner.assign("abc123")
        forced = next(c for c in CONDITIONS if c != natural)

        assigner.override("abc123", forced)
        assert assigner.assign("abc123") == forced
        assert assigner.assign("someone-else") == hash_condition("someone-else")

        assigner.clear_override("abc123")
        assert assigner.assign("abc123") == natural

    def test_scenarios_listing(self):
        scenarios = ScenarioAssigner(development=True).scenarios()
        assert [s["value"] for s in scenarios] == ["group", "multi", "single", "solo"]
        assert all(s["description"] for s in scenarios)
