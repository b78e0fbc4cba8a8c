"""Tests for coordinator configuration."""

from pathlib import Path

import pytest

from coordinator.config import CoordinatorConfig


class TestCoordinatorConfig:
    def test_defaults(self, monkeypatch, tmp_path):
        monkeypatch.setenv("COORDINATOR_HOME", str(tmp_path))
        config = CoordinatorConfig()

        assert config.confirmation_timeout_sec == 180.0
        assert config.transition_lock_timeout_sec == 30.0
        assert config.reconcile_min_age_sec == 210.0
        assert config.verify_funding is False
        assert config.default_verifier == "hash-only"
        assert config.db_path == tmp_path / "coord.db"
        assert not config.escrow_configured

    def test_escrow_configured_needs_all_three(self):
        partial = CoordinatorConfig(rpc_url="http://rpc", escrow_address="0x" + "ec" * 20)
        assert not partial.escrow_configured
        full = CoordinatorConfig(
            rpc_url="http://rpc", escrow_address="0x" + "ec" * 20, signer_key="0xkey"
        )
        assert full.escrow_configured

    def test_signer_key_not_in_repr(self):
        config = CoordinatorConfig(signer_key="0xsupersecret")
        assert "supersecret" not in repr(config)

    @pytest.mark.parametrize(
        "kwargs",
        [
            {"confirmation_timeout_sec": 0},
            {"transition_lock_timeout_sec": -1},
            {"reconcile_min_age_sec": -1},
            {"chain_id": 0},
            {"default_verifier": ""},
        ],
    )
    def test_invalid_values_rejected(self, kwargs):
        with pytest.raises(ValueError):
            CoordinatorConfig(**kwargs)

    def test_reconcile_age_follows_confirmation_timeout(self):
        assert CoordinatorConfig(confirmation_timeout_sec=60).reconcile_min_age_sec == 90.0
        assert CoordinatorConfig(reconcile_min_age_sec=0).reconcile_min_age_sec == 0

    def test_db_path_coerced_to_path(self):
        assert CoordinatorConfig(db_path="/tmp/x.db").db_path == Path("/tmp/x.db")


class TestFromEnv:
    def test_reads_environment(self):
        config = CoordinatorConfig.from_env(
            {
                "CHAIN_RPC": "http://rpc:8545",
                "ESCROW_ADDRESS": "0x" + "ec" * 20,
                "REQUESTER_PRIVKEY": "0xkey",
                "CHAIN_ID": "84532",
                "COORDINATOR_DB": "/data/coord.db",
                "COORDINATOR_VERIFY_FUNDING": "true",
                "COORDINATOR_CONFIRMATION_TIMEOUT": "60",
                "COORDINATOR_LOCK_TIMEOUT": "2.5",
                "COORDINATOR_RECONCILE_MIN_AGE": "300",
            }
        )

        assert config.rpc_url == "http://rpc:8545"
        assert config.signer_key == "0xkey"
        assert config.chain_id == 84532
        assert config.db_path == Path("/data/coord.db")
        assert config.verify_funding is True
        assert config.confirmation_timeout_sec == 60.0
        assert config.transition_lock_timeout_sec == 2.5
        assert config.reconcile_min_age_sec == 300.0
        assert config.escrow_configured

    def test_empty_environment(self):
        config = CoordinatorConfig.from_env({})
        assert config.rpc_url is None
        assert config.chain_id is None
        assert config.verify_funding is False

    def test_blank_values_treated_as_unset(self):
        config = CoordinatorConfig.from_env({"CHAIN_RPC": "", "ESCROW_ADDRESS": ""})
        assert config.rpc_url is None
        assert config.escrow_address is None

    def test_invalid_number_rejected(self):
        with pytest.raises(ValueError):
            CoordinatorConfig.from_env({"CHAIN_ID": "base"})
