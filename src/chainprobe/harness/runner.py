"""
chainprobe Scenario Runner

Main entry point for running the end-to-end scenarios against a node gateway
or the in-process dev ledger.
"""

import asyncio
import logging
import sys
import time
from typing import List, Optional, Tuple

import click

from ..config import FINGERPRINT_SIZE, IDENTITY_SIZE, SEED_SIZE
from ..crypto import Keypair
from ..dev_accounts import FACILITATOR_KEY, KEYS_BY_NAME
from ..encoding import build_canonical_message
from ..engine import ConfirmationEngine
from ..errors import HarnessError
from ..intent import sign_message
from ..ledger.node import DevNode
from ..rpc import JsonRpcRemote
from .config import ALL_SCENARIOS, HarnessConfig
from .reporter import ReportGenerator, ResultAccumulator, RunReport, ScenarioResult
from .scenarios import SCENARIOS, ScenarioContext, ScenarioStopped

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s [%(levelname)s] %(message)s",
)
logger = logging.getLogger(__name__)


class ScenarioHarness:
    """Runs the configured scenarios against one remote system."""

    def __init__(self, config: HarnessConfig):
        self.config = config
        self.remote = None
        self.engine: Optional[ConfirmationEngine] = None
        self.reporter = ReportGenerator(config.result_dir)

    @property
    def endpoint(self) -> str:
        return "dev" if self.config.dev else self.config.endpoint

    async def setup(self) -> None:
        """Start the dev ledger or connect to the endpoint."""
        if self.config.dev:
            node = DevNode(
                block_time=self.config.block_time,
                settlement_delay=self.config.settlement_delay,
            )
            await node.start()
            self.remote = node
            logger.info("Started dev ledger (block time %.2fs)", self.config.block_time)
        else:
            rpc = JsonRpcRemote(self.config.endpoint, request_timeout=self.config.timeout)
            await rpc.connect()
            self.remote = rpc
        self.engine = ConfirmationEngine(self.remote, default_timeout=self.config.timeout)

    async def teardown(self) -> None:
        if self.remote is not None:
            await self.remote.close()
            self.remote = None

    async def run_scenario(self, name: str) -> ScenarioResult:
        """Run one scenario; a raised HarnessError aborts it and is reported."""
        logger.info("Running scenario: %s", name)
        accumulator = ResultAccumulator(name, self.config.stop_on_first_failure)
        ctx = ScenarioContext(
            remote=self.remote,
            engine=self.engine,
            accumulator=accumulator,
            timeout=self.config.timeout,
            settlement_delay=self.config.settlement_delay,
        )
        start_time = time.time()
        aborted = None
        try:
            await SCENARIOS[name](ctx)
        except ScenarioStopped as e:
            aborted = str(e)
        except HarnessError as e:
            logger.error("Scenario %s aborted: %s", name, e)
            aborted = str(e)
        return accumulator.finish((time.time() - start_time) * 1000, aborted)

    async def run_all(self) -> RunReport:
        start_time = time.time()
        results: List[ScenarioResult] = []
        for name in self.config.scenarios:
            result = await self.run_scenario(name)
            results.append(result)
            if not result.passed and self.config.stop_on_first_failure:
                break
        return self.reporter.generate_report(
            scenario_results=results,
            endpoint=self.endpoint,
            execution_time_ms=(time.time() - start_time) * 1000,
        )


async def run_harness(config: HarnessConfig) -> int:
    harness = ScenarioHarness(config)
    try:
        await harness.setup()
        report = await harness.run_all()

        harness.reporter.write_json_report(report)
        harness.reporter.write_summary(report)
        harness.reporter.print_summary(report)

        return 0 if report.passed else 1
    finally:
        await harness.teardown()


@click.group()
def main() -> None:
    """chainprobe: end-to-end operation checks for a ledger node."""


@main.command()
@click.option("--endpoint", default=None, help="Node gateway WebSocket URL")
@click.option("--dev", is_flag=True, help="Run against an in-process dev ledger")
@click.option(
    "--scenario",
    "scenarios",
    multiple=True,
    type=click.Choice(ALL_SCENARIOS),
    help="Scenario to run (repeatable; default: all)",
)
@click.option(
    "--config",
    "config_path",
    default=None,
    type=click.Path(exists=True, dir_okay=False),
    help="YAML configuration file",
)
@click.option("--result-dir", default=None, help="Directory to write results")
@click.option("--timeout", default=None, type=float, help="Per-operation timeout in seconds")
@click.option("--verbose", is_flag=True, help="Enable verbose output")
@click.option("--stop-on-failure", is_flag=True, help="Stop on first failed check")
def run(
    endpoint: Optional[str],
    dev: bool,
    scenarios: Tuple[str, ...],
    config_path: Optional[str],
    result_dir: Optional[str],
    timeout: Optional[float],
    verbose: bool,
    stop_on_failure: bool,
) -> None:
    """Run the end-to-end scenarios."""

    # Load config from environment and file, then override with CLI args
    try:
        config = HarnessConfig.from_env()
        if config_path:
            config = HarnessConfig.from_yaml(config_path, base=config)

        if endpoint:
            config.endpoint = endpoint
        if dev:
            config.dev = True
        if scenarios:
            config.scenarios = list(scenarios)
        if result_dir:
            config.result_dir = result_dir
        if timeout is not None:
            config.timeout = timeout
        if verbose:
            config.verbose = True
        if stop_on_failure:
            config.stop_on_first_failure = True
        config.validate()
    except ValueError as e:
        raise click.UsageError(str(e)) from e

    if config.verbose:
        logging.getLogger().setLevel(logging.DEBUG)

    logger.info("Running %d scenarios against %s", len(config.scenarios), "dev" if config.dev else config.endpoint)
    try:
        exit_code = asyncio.run(run_harness(config))
    except HarnessError as e:
        logger.error("%s", e)
        exit_code = 2
    sys.exit(exit_code)


def _parse_hex(value: str, size: int, what: str) -> bytes:
    v = value[2:] if value.startswith(("0x", "0X")) else value
    try:
        raw = bytes.fromhex(v)
    except ValueError:
        raise click.BadParameter(f"{what} must be hex") from None
    if len(raw) != size:
        raise click.BadParameter(f"{what} must be {size} bytes, got {len(raw)}")
    return raw


def _parse_identity(value: str) -> bytes:
    key = KEYS_BY_NAME.get(value.lower())
    if key is not None:
        return key.public_key
    return _parse_hex(value, IDENTITY_SIZE, "identity")


@main.command("sign-intent")
@click.option("--payer", default="alice", help="Dev account name or 32-byte hex identity")
@click.option("--payee", default="bob", help="Dev account name or 32-byte hex identity")
@click.option("--amount", required=True, type=int)
@click.option("--nonce", required=True, type=int)
@click.option("--fingerprint", required=True, help="32-byte hex replay fingerprint")
@click.option("--seed", default=None, help="Facilitator seed hex (default: dev facilitator)")
def sign_intent_command(
    payer: str,
    payee: str,
    amount: int,
    nonce: int,
    fingerprint: str,
    seed: Optional[str],
) -> None:
    """Print the canonical intent message and the facilitator signature."""
    facilitator = Keypair.from_seed(_parse_hex(seed, SEED_SIZE, "seed")) if seed else FACILITATOR_KEY
    try:
        message = build_canonical_message(
            _parse_identity(payer),
            _parse_identity(payee),
            amount,
            nonce,
            _parse_hex(fingerprint, FINGERPRINT_SIZE, "fingerprint"),
        )
        signature = sign_message(message, facilitator)
    except HarnessError as e:
        raise click.ClickException(e.message) from e

    click.echo(f"facilitator: 0x{facilitator.public_key.hex()}")
    click.echo(f"message:     0x{message.hex()}")
    click.echo(f"signature:   0x{signature.hex()}")


if __name__ == "__main__":
    main()
