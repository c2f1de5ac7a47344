"""Scenario harness: configuration, outcome comparison, reporting, scenarios and the CLI."""

from __future__ import annotations

import json
import os

import pytest
import yaml
from click.testing import CliRunner

from chainprobe import calls, intent
from chainprobe.dev_accounts import ALICE_KEY, BOB, FACILITATOR
from chainprobe.engine import ConfirmationEngine
from chainprobe.errors import ErrorKind, ModuleError
from chainprobe.harness.checks import Expectation, OutcomeComparator
from chainprobe.harness.config import ALL_SCENARIOS, DEFAULT_ENDPOINT, HarnessConfig
from chainprobe.harness.reporter import CheckResult, ReportGenerator, ResultAccumulator
from chainprobe.harness.runner import ScenarioHarness, main
from chainprobe.harness.scenarios import ScenarioContext, ScenarioStopped
from chainprobe.types import Confirmed, Dropped, EmittedEvent, Included, Rejected, TimedOut

BLOCK = "0x" + "ef" * 32


# --- Configuration ---


def test_config_defaults() -> None:
    config = HarnessConfig()
    assert config.endpoint == DEFAULT_ENDPOINT
    assert config.scenarios == list(ALL_SCENARIOS)
    assert not config.dev


def test_config_from_env(monkeypatch) -> None:
    monkeypatch.setenv("CHAINPROBE_ENDPOINT", "ws://node:9944")
    monkeypatch.setenv("CHAINPROBE_TIMEOUT", "12.5")
    monkeypatch.setenv("CHAINPROBE_SETTLEMENT_DELAY", "7")
    monkeypatch.setenv("CHAINPROBE_DEV", "yes")
    monkeypatch.setenv("STOP_ON_FIRST_FAILURE", "true")
    monkeypatch.delenv("VERBOSE", raising=False)

    config = HarnessConfig.from_env()
    assert config.endpoint == "ws://node:9944"
    assert config.timeout == 12.5
    assert config.settlement_delay == 7
    assert config.dev
    assert config.stop_on_first_failure
    assert not config.verbose


def test_config_from_yaml(tmp_path) -> None:
    path = tmp_path / "chainprobe.yaml"
    path.write_text(yaml.safe_dump({"block_time": 0.1, "scenarios": ["settlement"], "timeout": 3}))

    config = HarnessConfig.from_yaml(str(path), base=HarnessConfig(endpoint="ws://base"))
    assert config.endpoint == "ws://base"
    assert config.block_time == 0.1
    assert config.scenarios == ["settlement"]


@pytest.mark.parametrize(
    "overrides",
    [
        {"timeout": 0},
        {"settlement_delay": -1},
        {"scenarios": ["mining"]},
        {"scenarios": "settlement"},
        {"endpoint_url": "ws://x"},
    ],
)
def test_config_rejects_invalid_values(overrides: dict) -> None:
    with pytest.raises(ValueError):
        HarnessConfig().merged(overrides)


# --- Comparison ---


def test_comparator_matches_ordered_events() -> None:
    comparator = OutcomeComparator()
    outcome = Confirmed(BLOCK, (EmittedEvent("a", "One"), EmittedEvent("b", "Two"), EmittedEvent("a", "Three")))

    assert comparator.compare(Expectation.confirmed("a.One", "a.Three"), outcome, "c") == []
    diverged = comparator.compare(Expectation.confirmed("a.Three", "a.One"), outcome, "c")
    assert [d.field for d in diverged] == ["events"]


def test_comparator_kind_mismatch() -> None:
    diverged = OutcomeComparator().compare(Expectation.confirmed(), TimedOut(), "check")
    assert len(diverged) == 1
    assert diverged[0].field == "outcome"
    assert diverged[0].check == "check"


def test_comparator_requires_named_module_error() -> None:
    comparator = OutcomeComparator()
    expected = Expectation.module_error_of("x402Settlement", "InvalidNonce")

    match = Rejected(ErrorKind.BUSINESS_REJECTION, "x", ModuleError("x402Settlement", "InvalidNonce"))
    assert comparator.compare(expected, match, "c") == []

    other = Rejected(ErrorKind.BUSINESS_REJECTION, "x", ModuleError("x402Settlement", "NotAuthorized"))
    assert [d.field for d in comparator.compare(expected, other, "c")] == ["module_error"]

    transport = Rejected(ErrorKind.TRANSPORT_FAILURE, "1010")
    assert {d.field for d in comparator.compare(expected, transport, "c")} == {"error_kind", "module_error"}


def test_expectation_event_names_are_qualified() -> None:
    with pytest.raises(ValueError):
        Expectation.confirmed("PaymentIntentSubmitted")
    assert str(Expectation.rejected(ErrorKind.OPAQUE_REJECTION)) == "rejected (OpaqueRejection)"


# --- Reporting ---


def _result(name: str, passed: bool) -> CheckResult:
    return CheckResult(name=name, scenario="s", passed=passed, execution_time_ms=1.0, outcome="o")


def test_accumulator_and_stop_on_failure() -> None:
    acc = ResultAccumulator("s", stop_on_first_failure=True)
    acc.record(_result("a", True))
    assert not acc.should_stop
    acc.record(_result("b", False))
    assert acc.should_stop

    result = acc.finish(5.0)
    assert (result.total_checks, result.passed_checks, result.failed_checks) == (2, 1, 1)
    assert result.pass_rate == 50.0
    assert not result.passed


def test_report_files(tmp_path) -> None:
    ok = ResultAccumulator("a")
    ok.record(_result("a1", True))
    aborted = ResultAccumulator("b")
    aborted.record(_result("b1", True))
    aborted.record(CheckResult(
        name="b2", scenario="b", passed=True, execution_time_ms=0.0, outcome="skipped: short delay", skipped=True
    ))

    generator = ReportGenerator(str(tmp_path))
    report = generator.generate_report(
        [ok.finish(1.0), aborted.finish(2.0, aborted="TransportFailure: gone")], "dev", 3.0
    )
    assert report.total_checks == 3
    assert not report.passed

    with open(generator.write_json_report(report)) as f:
        data = json.load(f)
    assert data["passed"] is False
    assert data["scenario_results"][1]["aborted"] == "TransportFailure: gone"

    with open(generator.write_summary(report)) as f:
        summary = f.read()
    assert "[FAIL] b" in summary
    assert "aborted: TransportFailure: gone" in summary
    assert "[SKIP] b2: skipped: short delay" in summary
    assert data["scenario_results"][1]["checks"][1]["skipped"] is True


# --- Scenario context ---


async def test_context_stops_after_failed_check(remote) -> None:
    remote.script(Dropped("invalid"))
    accumulator = ResultAccumulator("s", stop_on_first_failure=True)
    ctx = ScenarioContext(remote, ConfirmationEngine(remote), accumulator, timeout=1.0, settlement_delay=1)

    with pytest.raises(ScenarioStopped):
        await ctx.expect("t", calls.transfer_keep_alive(BOB, 1), ALICE_KEY, Expectation.confirmed())
    assert accumulator.results[0].divergences[0].field == "outcome"


async def test_context_records_passing_check(remote) -> None:
    remote.script(Included(BLOCK))
    accumulator = ResultAccumulator("s")
    ctx = ScenarioContext(remote, ConfirmationEngine(remote), accumulator, timeout=1.0, settlement_delay=1)

    result = await ctx.expect("t", calls.transfer_keep_alive(BOB, 1), ALICE_KEY, Expectation.confirmed())
    assert result.passed
    assert ctx.expect_value("v", "status", 1, 1).passed
    assert accumulator.passed == 2


# --- Scenarios on the dev ledger ---


def _dev_config(tmp_path, **overrides) -> HarnessConfig:
    values = dict(dev=True, block_time=0.02, settlement_delay=3, timeout=5.0, result_dir=str(tmp_path))
    values.update(overrides)
    return HarnessConfig(**values)


async def test_all_scenarios_pass_on_dev_ledger(tmp_path) -> None:
    harness = ScenarioHarness(_dev_config(tmp_path))
    await harness.setup()
    try:
        report = await harness.run_all()
    finally:
        await harness.teardown()

    failures = [
        (c.name, c.outcome)
        for s in report.scenario_results
        for c in s.check_results
        if not c.passed
    ]
    assert failures == []
    assert report.passed
    assert [s.scenario for s in report.scenario_results] == list(ALL_SCENARIOS)
    assert report.endpoint == "dev"


async def test_settlement_moves_funds_on_dev_ledger(tmp_path) -> None:
    harness = ScenarioHarness(_dev_config(tmp_path, scenarios=["settlement"]))
    await harness.setup()
    try:
        result = await harness.run_scenario("settlement")
        receipts = harness.remote.state.receipts
        facilitator_free = harness.remote.state.free_balance(FACILITATOR)
    finally:
        await harness.teardown()

    assert result.passed
    assert list(receipts) == [0]
    assert facilitator_free > 0
    early = next(c for c in result.check_results if c.name.startswith("5.3a"))
    assert not early.skipped


async def test_early_finalize_is_skipped_when_next_block_meets_delay(tmp_path) -> None:
    harness = ScenarioHarness(_dev_config(tmp_path, settlement_delay=1, scenarios=["settlement"]))
    await harness.setup()
    try:
        result = await harness.run_scenario("settlement")
    finally:
        await harness.teardown()

    assert result.passed
    early = [c for c in result.check_results if c.name.startswith("5.3a")]
    assert len(early) == 1
    assert early[0].skipped
    assert early[0].outcome.startswith("skipped: block")


# --- CLI ---


def test_sign_intent_command() -> None:
    result = CliRunner().invoke(
        main, ["sign-intent", "--amount", "500", "--nonce", "1", "--fingerprint", "01" * 32]
    )
    assert result.exit_code == 0, result.output

    lines = dict(line.split(":", 1) for line in result.output.strip().splitlines())
    facilitator = bytes.fromhex(lines["facilitator"].strip()[2:])
    message = bytes.fromhex(lines["message"].strip()[2:])
    signature = bytes.fromhex(lines["signature"].strip()[2:])
    assert facilitator == FACILITATOR
    assert len(message) == 120
    assert intent.verify_message(message, signature, facilitator)


def test_sign_intent_rejects_short_fingerprint() -> None:
    result = CliRunner().invoke(
        main, ["sign-intent", "--amount", "1", "--nonce", "1", "--fingerprint", "0102"]
    )
    assert result.exit_code == 2
    assert "fingerprint must be 32 bytes" in result.output


def test_run_command_on_dev_ledger(tmp_path) -> None:
    config_path = tmp_path / "dev.yaml"
    config_path.write_text(yaml.safe_dump({"block_time": 0.02, "settlement_delay": 3, "timeout": 5.0}))

    result = CliRunner().invoke(
        main,
        ["run", "--dev", "--config", str(config_path), "--scenario", "task_mode", "--result-dir", str(tmp_path)],
    )
    assert result.exit_code == 0, result.output
    assert os.path.exists(tmp_path / "chainprobe-report.json")
    assert os.path.exists(tmp_path / "chainprobe-summary.txt")


def test_run_command_rejects_bad_config(tmp_path) -> None:
    config_path = tmp_path / "bad.yaml"
    config_path.write_text(yaml.safe_dump({"timeout": -1}))

    result = CliRunner().invoke(main, ["run", "--dev", "--config", str(config_path)])
    assert result.exit_code == 2


def test_run_command_rejects_bad_environment(monkeypatch) -> None:
    monkeypatch.setenv("CHAINPROBE_TIMEOUT", "soon")
    result = CliRunner().invoke(main, ["run", "--dev"])
    assert result.exit_code == 2
    assert "soon" in result.output
