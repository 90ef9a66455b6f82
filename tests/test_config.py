"""
Tests for quota configuration.

Tests cover:
- Per-scope limit resolution and compiled-in defaults
- Lenient handling of malformed values
- Runtime switches (enabled, output reserve)
- YAML loading
"""
import pytest

from quota_ledger.config import (
    DEFAULT_GLOBAL_DAILY_TOKENS,
    DEFAULT_MAX_OUTPUT_RESERVE,
    DEFAULT_TOPIC_DAILY_TOKENS,
    DEFAULT_USER_DAILY_TOKENS,
    QuotaLimitsConfig,
    coerce_token_count,
    is_enabled,
    load_config,
    parse_config,
    resolve_configured_limit,
    resolve_max_output_reserve_tokens,
)
from quota_ledger.models import Scope


# ============================================================
# Limit Resolution Tests
# ============================================================


class TestResolveConfiguredLimit:
    """Test per-scope limit resolution."""

    def test_defaults_per_scope(self):
        """Test compiled-in defaults apply when nothing is configured."""
        config = QuotaLimitsConfig()
        assert resolve_configured_limit(config, Scope.GLOBAL) == DEFAULT_GLOBAL_DAILY_TOKENS
        assert resolve_configured_limit(config, Scope.USER) == DEFAULT_USER_DAILY_TOKENS
        assert resolve_configured_limit(config, Scope.TOPIC) == DEFAULT_TOPIC_DAILY_TOKENS

    def test_default_ordering(self):
        """Test global default is highest and user default lowest."""
        assert DEFAULT_GLOBAL_DAILY_TOKENS > DEFAULT_TOPIC_DAILY_TOKENS > DEFAULT_USER_DAILY_TOKENS

    def test_camel_case_override(self):
        """Test overrides given with the channel's camelCase keys."""
        config = parse_config({"limits": {"perUserDailyTokens": 1000, "globalDailyTokens": 5000}})
        assert resolve_configured_limit(config, "user") == 1000
        assert resolve_configured_limit(config, "global") == 5000
        assert resolve_configured_limit(config, "topic") == DEFAULT_TOPIC_DAILY_TOKENS

    def test_snake_case_override(self):
        """Test overrides given with snake_case keys."""
        config = parse_config({"limits": {"per_topic_daily_tokens": 750}})
        assert resolve_configured_limit(config, Scope.TOPIC) == 750

    def test_fractional_override_truncated(self):
        """Test fractional limits are truncated."""
        config = parse_config({"limits": {"perUserDailyTokens": 1500.9}})
        assert resolve_configured_limit(config, Scope.USER) == 1500

    def test_zero_override_kept(self):
        """Test a zero limit is a real limit, not a fallback."""
        config = parse_config({"limits": {"perUserDailyTokens": 0}})
        assert resolve_configured_limit(config, Scope.USER) == 0

    @pytest.mark.parametrize("bad", ["lots", -5, float("inf"), float("nan"), True, [100], {"a": 1}])
    def test_malformed_override_uses_default(self, bad):
        """Test malformed overrides fall back to the default."""
        config = parse_config({"limits": {"perUserDailyTokens": bad}})
        assert resolve_configured_limit(config, Scope.USER) == DEFAULT_USER_DAILY_TOKENS

    def test_numeric_string_override(self):
        """Test numeric strings are accepted."""
        config = parse_config({"limits": {"globalDailyTokens": " 2500 "}})
        assert resolve_configured_limit(config, Scope.GLOBAL) == 2500

    @pytest.mark.parametrize("blank", [None, "", "   "])
    def test_null_or_blank_uses_default(self, blank):
        """Test a null or blank override keeps the scope enforced at its default."""
        config = parse_config({"limits": {"perUserDailyTokens": blank}})
        assert resolve_configured_limit(config, Scope.USER) == DEFAULT_USER_DAILY_TOKENS

    def test_unlimited_sentinel(self):
        """Test only the literal "unlimited" disables a scope."""
        config = parse_config({"limits": {"perTopicDailyTokens": " Unlimited "}})
        assert resolve_configured_limit(config, Scope.TOPIC) is None
        assert resolve_configured_limit(config, Scope.USER) == DEFAULT_USER_DAILY_TOKENS

    def test_limits_not_a_mapping(self):
        """Test a non-mapping limits section is ignored."""
        config = parse_config({"limits": "generous"})
        assert resolve_configured_limit(config, Scope.GLOBAL) == DEFAULT_GLOBAL_DAILY_TOKENS

    def test_unknown_scope_raises(self):
        """Test an unknown scope is a programming error."""
        with pytest.raises(ValueError):
            resolve_configured_limit(QuotaLimitsConfig(), "team")


class TestCoerceTokenCount:
    """Test token count coercion."""

    def test_values(self):
        assert coerce_token_count(10) == 10
        assert coerce_token_count(10.7) == 10
        assert coerce_token_count("42") == 42
        assert coerce_token_count(None) is None
        assert coerce_token_count(False) is None
        assert coerce_token_count(-1) is None


# ============================================================
# Runtime Switch Tests
# ============================================================


class TestRuntimeSwitches:
    """Test enabled flag and output reserve resolution."""

    def test_enabled_by_default(self):
        """Test quotas are enabled unless explicitly disabled."""
        assert is_enabled(QuotaLimitsConfig()) is True
        assert is_enabled(parse_config({"enabled": None})) is True
        assert is_enabled(parse_config({"enabled": "yes"})) is True

    @pytest.mark.parametrize("off", [False, "false", "Off", "0", "no"])
    def test_explicit_disable(self, off):
        """Test explicit false values disable quotas."""
        assert is_enabled(parse_config({"enabled": off})) is False

    def test_max_output_reserve_default(self):
        """Test default output reserve."""
        assert resolve_max_output_reserve_tokens(QuotaLimitsConfig()) == DEFAULT_MAX_OUTPUT_RESERVE

    def test_max_output_reserve_truncated(self):
        """Test output reserve is truncated to an int."""
        config = parse_config({"maxOutputReserveTokens": 1200.9})
        assert resolve_max_output_reserve_tokens(config) == 1200

    def test_max_output_reserve_negative_clamped(self):
        """Test negative output reserve clamps to zero."""
        config = parse_config({"maxOutputReserveTokens": -10})
        assert resolve_max_output_reserve_tokens(config) == 0

    def test_max_output_reserve_malformed(self):
        """Test malformed output reserve uses the default."""
        config = parse_config({"maxOutputReserveTokens": "plenty"})
        assert resolve_max_output_reserve_tokens(config) == DEFAULT_MAX_OUTPUT_RESERVE

    def test_bootstrap_ids_stringified(self):
        """Test admin seeds are coerced to non-empty strings."""
        config = parse_config({"bootstrapAdminUserIds": [12345, "alice", "", None, "  "]})
        assert config.bootstrap_admin_user_ids == ["12345", "alice"]

    def test_bootstrap_ids_not_a_list(self):
        """Test a scalar seed becomes a one-element list."""
        assert parse_config({"bootstrapAdminUserIds": 7}).bootstrap_admin_user_ids == ["7"]
        assert parse_config({"bootstrapAdminUserIds": {"x": 1}}).bootstrap_admin_user_ids == []

    def test_blank_time_zone_is_unset(self):
        """Test blank zone means default."""
        assert parse_config({"timeZone": "   "}).time_zone is None
        assert parse_config({"timeZone": " Europe/Berlin "}).time_zone == "Europe/Berlin"

    def test_reservation_ttl(self):
        """Test TTL parsing, with zero or garbage meaning no expiry."""
        assert parse_config({"reservationTtlSeconds": 900}).reservation_ttl_seconds == 900
        assert parse_config({"reservationTtlSeconds": 0}).reservation_ttl_seconds is None
        assert parse_config({"reservationTtlSeconds": "soon"}).reservation_ttl_seconds is None

    def test_database_path(self, tmp_path):
        """Test db path falls back to the default location."""
        assert QuotaLimitsConfig().database_path.endswith("usage-limits.sqlite")
        db = str(tmp_path / "ledger.db")
        assert parse_config({"dbPath": db}).database_path == db


# ============================================================
# YAML Loading Tests
# ============================================================


class TestLoadConfig:
    """Test loading configuration files."""

    def test_missing_file_returns_defaults(self, tmp_path):
        """Test missing file gives default config."""
        config = load_config(tmp_path / "absent.yaml")
        assert config == QuotaLimitsConfig()

    def test_none_returns_defaults(self):
        """Test no path gives default config."""
        assert load_config(None).enabled is True

    def test_load_top_level_section(self, tmp_path):
        """Test a file that is the usage-limits section itself."""
        path = tmp_path / "quota.yaml"
        path.write_text(
            "enabled: true\n"
            "timeZone: UTC\n"
            "bootstrapAdminUserIds: [111]\n"
            "limits:\n"
            "  perUserDailyTokens: 1234\n"
        )
        config = load_config(path)
        assert config.time_zone == "UTC"
        assert config.bootstrap_admin_user_ids == ["111"]
        assert resolve_configured_limit(config, Scope.USER) == 1234

    def test_load_nested_section(self, tmp_path):
        """Test a file nesting the section under usageLimits."""
        path = tmp_path / "bot.yaml"
        path.write_text(
            "token: abc\n"
            "usageLimits:\n"
            "  enabled: false\n"
            "  limits:\n"
            "    globalDailyTokens: 999\n"
        )
        config = load_config(path)
        assert config.enabled is False
        assert resolve_configured_limit(config, Scope.GLOBAL) == 999

    def test_blank_limit_key_keeps_default(self, tmp_path):
        """Test a limit key left empty in YAML does not lift the limit."""
        path = tmp_path / "bot.yaml"
        path.write_text(
            "usageLimits:\n"
            "  limits:\n"
            "    perUserDailyTokens:\n"
        )
        config = load_config(path)
        assert resolve_configured_limit(config, Scope.USER) == DEFAULT_USER_DAILY_TOKENS

    def test_malformed_yaml_returns_defaults(self, tmp_path):
        """Test unparseable YAML degrades to defaults."""
        path = tmp_path / "broken.yaml"
        path.write_text("limits: [unclosed\n")
        assert load_config(path) == QuotaLimitsConfig()

    def test_non_mapping_document(self, tmp_path):
        """Test a YAML list document degrades to defaults."""
        path = tmp_path / "list.yaml"
        path.write_text("- a\n- b\n")
        assert load_config(path) == QuotaLimitsConfig()

    def test_empty_file(self, tmp_path):
        """Test an empty file gives defaults."""
        path = tmp_path / "empty.yaml"
        path.write_text("")
        assert load_config(path).enabled is True
