"""
Tests for the application entry point.
"""

import json

import pytest

import app
from core.settings import LedgerSettings
from core.types import VaultType
from event_ingestion import ContractRegistry

from conftest import ALICE, BOB, CONSERVATIVE_VAULT, REFERRAL_MANAGER, USDC, tx


BASE_UNIX = 1735689600


def line(name, args, n, contract=CONSERVATIVE_VAULT, offset=0):
    return json.dumps({
        "contractAddress": contract,
        "eventName": name,
        "args": args,
        "txHash": tx(n),
        "logIndex": 0,
        "blockNumber": n,
        "blockTimestamp": BASE_UNIX + offset,
    })


EVENT_LINES = [
    line("ReferralRegistered", {"referrer": ALICE, "referee": BOB}, 1, contract=REFERRAL_MANAGER),
    line("Deposited", {"user": ALICE, "assets": str(1000 * USDC), "shares": str(1000 * USDC)}, 2),
    line("Deposited", {"user": BOB, "assets": str(2000 * USDC), "shares": str(2000 * USDC)}, 3),
    line("Approval", {}, 4),
]


@pytest.fixture
def events_file(tmp_path):
    path = tmp_path / "events.jsonl"
    path.write_text("\n".join(EVENT_LINES[:2] + ["", "{not json", "[1, 2]"] + EVENT_LINES[2:]) + "\n")
    return path


@pytest.fixture
def config_file(tmp_path):
    path = tmp_path / "ledger.yaml"
    path.write_text(
        "contracts:\n"
        f"  vaults: {{\"{CONSERVATIVE_VAULT}\": conservative}}\n"
        f"  referral_managers: [\"{REFERRAL_MANAGER}\"]\n"
        "dispatcher_workers: 2\n"
    )
    return path


@pytest.fixture
def settings():
    settings = LedgerSettings.for_testing()
    settings.contracts = ContractRegistry(
        vaults={CONSERVATIVE_VAULT: VaultType.CONSERVATIVE},
        referral_managers=[REFERRAL_MANAGER],
    )
    return settings


class TestReadEvents:

    def test_skips_bad_lines(self, events_file):
        events = list(app.read_events(events_file))

        assert len(events) == 4
        assert events[0]["eventName"] == "ReferralRegistered"


class TestReplay:

    @pytest.mark.asyncio
    async def test_replay_events(self, settings, events_file, clock):
        runtime = app.build_runtime(settings, clock)

        counts = await app.replay_events(runtime, app.read_events(events_file))

        assert counts == {"applied": 3, "unknown": 1}
        assert runtime.points.balance_of(ALICE) == 10 + 100
        assert runtime.points.balance_of(BOB) == 20
        assert runtime.facade.stats().total_users == 2

    @pytest.mark.asyncio
    async def test_save_and_rebuild(self, settings, events_file, clock):
        runtime = app.build_runtime(settings, clock)
        await app.replay_events(runtime, app.read_events(events_file))
        database = app.Database("sqlite://")
        database.create_schema()

        app.save_to_database(runtime, database)
        restored = app.build_runtime(settings, clock)
        app.rebuild_from_database(restored, database)

        assert restored.points.balances() == runtime.points.balances()
        counts = await app.replay_events(restored, app.read_events(events_file))
        assert counts == {"duplicate": 3, "unknown": 1}
        database.dispose()


class TestMain:

    @pytest.fixture(autouse=True)
    def clean_environment(self, monkeypatch):
        for name in ("LEDGER_DATABASE_URL", "DATABASE_URL", "RPC_URL", "LOG_LEVEL", "DISPATCHER_WORKERS"):
            monkeypatch.delenv(name, raising=False)
        monkeypatch.setattr(app, "setup_logging", lambda level: None)

    def test_replay_and_restart(self, tmp_path, events_file, config_file, capsys):
        database_url = f"sqlite:///{tmp_path / 'ledger.db'}"
        argv = ["--events", str(events_file), "--config", str(config_file), "--database-url", database_url]

        assert app.main(argv) == 0
        first = json.loads(capsys.readouterr().out.strip().splitlines()[-1])
        assert first["total_points"] == 130
        assert first["total_users"] == 2

        assert app.main(argv) == 0
        second = json.loads(capsys.readouterr().out.strip().splitlines()[-1])
        assert second == first

    def test_missing_events_file(self, tmp_path, config_file):
        assert app.main(["--events", str(tmp_path / "none.jsonl"), "--config", str(config_file)]) == 1

    def test_missing_config(self, tmp_path):
        assert app.main(["--config", str(tmp_path / "none.yaml")]) == 1

    def test_reconcile_requires_rpc(self, tmp_path, config_file):
        database_url = f"sqlite:///{tmp_path / 'ledger.db'}"
        argv = ["--config", str(config_file), "--database-url", database_url, "--reconcile-once"]
        assert app.main(argv) == 2
