"""
Tests for edge range blocks and the registry.
"""

import ipaddress

import pytest

from ip_ranges import (
    AddressBlock, RangeRegistry, parse_block, load_registry,
    CLOUDFLARE_IPV4, CLOUDFLARE_IPV6, BUILTIN_VERSION,
)


class TestParseBlock:
    def test_ipv4(self):
        block = parse_block("173.245.48.0/20")
        assert block.family == 4
        assert block.prefix_length == 20
        assert block.network == ipaddress.ip_address("173.245.48.0")
        assert block.cidr == "173.245.48.0/20"

    def test_ipv6(self):
        block = parse_block("2a06:98c0::/29")
        assert block.family == 6
        assert block.prefix_length == 29

    def test_bare_address_is_host_block(self):
        assert parse_block("10.1.2.3").prefix_length == 32
        assert parse_block("::1").prefix_length == 128

    def test_host_bits_tolerated(self):
        assert parse_block("10.1.2.3/8").network == ipaddress.ip_address("10.1.2.3")

    @pytest.mark.parametrize("bad", ["", "10.0.0.0/33", "::/129", "10.0.0.0/-1", "10.0.0.0/x", "not-an-ip/8", "10.0.0/8", "[10.0.0.0]/8"])
    def test_malformed_raises(self, bad):
        with pytest.raises(ValueError):
            parse_block(bad)

    def test_non_string_raises(self):
        with pytest.raises(ValueError):
            parse_block(None)


class TestAddressBlock:
    def test_family_must_match(self):
        with pytest.raises(ValueError):
            AddressBlock(ipaddress.ip_address("10.0.0.0"), 8, 6)

    def test_prefix_bounds(self):
        AddressBlock(ipaddress.ip_address("0.0.0.0"), 0, 4)
        AddressBlock(ipaddress.ip_address("::"), 128, 6)
        with pytest.raises(ValueError):
            AddressBlock(ipaddress.ip_address("::"), 129, 6)


class TestRegistry:
    def test_builtin_contains_both_families(self, registry):
        assert registry.version == BUILTIN_VERSION
        assert len(registry) == len(CLOUDFLARE_IPV4) + len(CLOUDFLARE_IPV6)
        assert len(registry.blocks_for(4)) == 15
        assert len(registry.blocks_for(6)) == 7

    def test_order_preserved(self, registry):
        assert registry.cidrs() == CLOUDFLARE_IPV4 + CLOUDFLARE_IPV6
        assert list(registry) == list(registry.all_blocks())

    def test_from_cidrs_skips_bad_entries(self, caplog):
        reg = RangeRegistry.from_cidrs(["10.0.0.0/8", "garbage", "", "# comment", "fd00::/8  # ula"], version="t")
        assert reg.cidrs() == ["10.0.0.0/8", "fd00::/8"]
        assert reg.version == "t"
        assert "garbage" in caplog.text

    def test_from_file(self, tmp_path):
        path = tmp_path / "ips-v4"
        path.write_text("# snapshot\n192.0.2.0/24\n198.51.100.0/24\n", encoding="utf-8")
        reg = RangeRegistry.from_file(path)
        assert reg.cidrs() == ["192.0.2.0/24", "198.51.100.0/24"]
        assert reg.version == "ips-v4"

    def test_load_registry_defaults_to_builtin(self):
        assert load_registry().version == BUILTIN_VERSION
        assert load_registry("").version == BUILTIN_VERSION

    def test_load_registry_missing_file(self, tmp_path):
        with pytest.raises(OSError):
            load_registry(str(tmp_path / "nope"))

    def test_empty_registry(self):
        assert len(RangeRegistry([])) == 0
