"""Unit tests for the deterministic range allocator.

Covers determinism, range bounds, override precedence, CIDR format,
input validation and the optional collision probing.
"""

import re

import pytest

from netforge.network import (
    AddressSpaceExhaustedError,
    AllocationKey,
    CollisionError,
    InvalidInputError,
    MalformedOverrideError,
    NetworkError,
    RangeAllocator,
    collision_probability,
    compute_octet,
    probe_free_octet,
    unique_string,
)

SAMPLE_PROJECTS = ["cloudpi", "myapp", "webapp", "abc", "inventory1", "x9", "billing", "pay", "crm", "datalake"]
SAMPLE_ENVIRONMENTS = ["dev", "test", "prod", "qa", "staging", "e"]

# A 15-character project in "dev" hashes to octet 87 under the weighted scheme
KEY_AT_87 = ("platformservice", "dev")


@pytest.fixture
def allocator():
    return RangeAllocator()


class TestDeterminism:
    """The same key must always produce the same range."""

    def test_repeat_calls_identical(self, allocator):
        first = allocator.allocate("cloudpi", "dev")
        second = allocator.allocate("cloudpi", "dev")
        assert first == second

    def test_new_allocator_same_result(self):
        assert RangeAllocator().allocate("myapp", "prod") == RangeAllocator().allocate("myapp", "prod")

    def test_cloudpi_dev_known_octet(self, allocator):
        result = allocator.allocate("cloudpi", "dev")
        assert result.network_octet == 183
        assert result.vnet_prefix == "10.183.0.0/16"
        assert result.app_subnet_prefix == "10.183.1.0/24"
        assert result.source == "computed"

    def test_unique_string_is_stable(self):
        value = unique_string("cloudpidev")
        assert value == unique_string("cloudpidev")
        assert len(value) == 13
        assert re.fullmatch(r"[a-z2-7]{13}", value)

    def test_digest_scheme_deterministic(self):
        allocator = RangeAllocator("digest")
        assert allocator.allocate("cloudpi", "dev") == allocator.allocate("cloudpi", "dev")


class TestRangeAndFormat:
    @pytest.mark.parametrize("scheme", ["weighted", "digest"])
    def test_octet_in_bounds(self, scheme):
        allocator = RangeAllocator(scheme)
        for project in SAMPLE_PROJECTS:
            for env in SAMPLE_ENVIRONMENTS:
                octet = allocator.allocate(project, env).network_octet
                assert 50 <= octet <= 249

    def test_long_inputs_degrade_gracefully(self, allocator):
        result = allocator.allocate("p" * 500, "environment" * 40)
        assert 50 <= result.network_octet <= 249

    def test_prefix_format_shares_octet(self, allocator):
        for project in SAMPLE_PROJECTS:
            result = allocator.allocate(project, "test")
            vnet = re.fullmatch(r"10\.(\d+)\.0\.0/16", result.vnet_prefix)
            subnet = re.fullmatch(r"10\.(\d+)\.1\.0/24", result.app_subnet_prefix)
            assert vnet and subnet
            assert int(vnet.group(1)) == int(subnet.group(1)) == result.network_octet


class TestSensitivity:
    def test_different_project_changes_octet(self, allocator):
        assert allocator.allocate("cloudpi", "dev").network_octet != allocator.allocate("myapp", "dev").network_octet

    def test_different_environment_changes_octet(self, allocator):
        assert allocator.allocate("cloudpi", "dev").network_octet != allocator.allocate("cloudpi", "prod").network_octet

    def test_weighted_scheme_collides_on_equal_lengths(self, allocator):
        """Known limitation: only field lengths feed the weighted hash."""
        assert allocator.allocate("cloudpi", "dev").network_octet == allocator.allocate("abcdefg", "xyz").network_octet

    def test_digest_scheme_spreads_keys(self):
        allocator = RangeAllocator("digest")
        octets = {allocator.allocate(f"proj{i}", "dev").network_octet for i in range(100)}
        # 100 keys in 200 buckets should land in ~79 distinct buckets
        assert len(octets) > 60

    def test_collision_probability_birthday_bound(self):
        assert collision_probability(0) == 0.0
        assert collision_probability(1) == 0.0
        assert 0.45 < collision_probability(17) < 0.55
        assert collision_probability(201) == 1.0


class TestOverrides:
    def test_override_precedence(self, allocator):
        result = allocator.allocate("cloudpi", "prod", "10.200.0.0/16", "10.200.1.0/24")
        assert result.vnet_prefix == "10.200.0.0/16"
        assert result.app_subnet_prefix == "10.200.1.0/24"
        assert result.network_octet is None
        assert result.source == "override"

    def test_override_without_key(self, allocator):
        result = allocator.allocate("", "", "192.168.0.0/16", "192.168.4.0/24")
        assert result.vnet_prefix == "192.168.0.0/16"

    def test_partial_override_rejected(self, allocator):
        with pytest.raises(MalformedOverrideError):
            allocator.allocate("cloudpi", "dev", vnet_prefix="10.200.0.0/16")

    @pytest.mark.parametrize(
        "vnet,subnet",
        [
            ("10.200.0.0/33", "10.200.1.0/24"),
            ("not-a-cidr", "10.200.1.0/24"),
            ("10.200.0.1/16", "10.200.1.0/24"),
            ("10.200.0.0", "10.200.1.0/24"),
            ("10.200.0.0/16", "10.201.1.0/24"),
        ],
    )
    def test_malformed_override(self, allocator, vnet, subnet):
        with pytest.raises(MalformedOverrideError):
            allocator.allocate("cloudpi", "dev", vnet, subnet)


class TestInvalidInput:
    def test_both_empty(self, allocator):
        with pytest.raises(InvalidInputError):
            allocator.allocate("", "")

    def test_both_none(self, allocator):
        with pytest.raises(InvalidInputError):
            allocator.allocate(None, None)

    def test_single_field_is_enough(self, allocator):
        assert allocator.allocate("", "dev").network_octet == 92

    def test_invalid_input_is_network_error(self, allocator):
        with pytest.raises(NetworkError):
            allocator.allocate("", "")

    def test_unknown_scheme(self):
        with pytest.raises(NetworkError):
            RangeAllocator("random")

    def test_unknown_scheme_in_hash(self):
        with pytest.raises(NetworkError):
            compute_octet(AllocationKey("cloudpi", "dev"), scheme="md5")


class TestCollisionAvoidance:
    def test_key_hashes_to_87(self, allocator):
        assert allocator.allocate(*KEY_AT_87).network_octet == 87

    def test_probe_past_taken_octet(self, allocator):
        result = allocator.allocate(*KEY_AT_87, in_use={87: "billing/dev"})
        assert result.network_octet == 88
        assert result.requested_octet == 87
        assert result.source == "probed"
        assert result.conflict.owner == "billing/dev"
        assert result.vnet_prefix == "10.88.0.0/16"

    def test_probe_skips_run_of_taken(self, allocator):
        result = allocator.allocate(*KEY_AT_87, in_use={87, 88, 89})
        assert result.network_octet == 90
        assert result.conflict.owner == "unknown"

    def test_free_octet_untouched(self, allocator):
        result = allocator.allocate(*KEY_AT_87, in_use={100: "other/dev"})
        assert result.network_octet == 87
        assert result.conflict is None

    def test_probe_wraps(self):
        assert probe_free_octet(249, {249}) == 50
        assert probe_free_octet(248, {248, 249, 50}) == 51

    def test_exhausted(self):
        with pytest.raises(AddressSpaceExhaustedError):
            probe_free_octet(120, set(range(50, 250)))

    def test_warn_policy_keeps_octet(self, allocator):
        result = allocator.allocate(*KEY_AT_87, in_use={87: "billing/dev"}, policy="warn")
        assert result.network_octet == 87
        assert result.conflict.owner == "billing/dev"
        assert "billing/dev" in str(result.conflict)

    def test_reject_policy(self, allocator):
        with pytest.raises(CollisionError, match="billing/dev"):
            allocator.allocate(*KEY_AT_87, in_use={87: "billing/dev"}, policy="reject")


class TestAddressHelpers:
    def test_compute_ip(self):
        assert RangeAllocator.compute_ip("10.87.1.0/24", 10) == "10.87.1.10"

    def test_compute_ip_out_of_range(self):
        with pytest.raises(NetworkError):
            RangeAllocator.compute_ip("10.87.1.0/24", 300)

    def test_gateway_ip(self):
        assert RangeAllocator.gateway_ip("10.87.1.0/24") == "10.87.1.1"

    def test_first_host_ip(self):
        assert RangeAllocator.first_host_ip("10.87.1.0/24") == "10.87.1.4"

    def test_to_dict(self, allocator):
        data = allocator.allocate(*KEY_AT_87, in_use={87: "billing/dev"}).to_dict()
        assert data["network_octet"] == 88
        assert data["conflict"] == "octet 87 is already allocated to 'billing/dev'"
