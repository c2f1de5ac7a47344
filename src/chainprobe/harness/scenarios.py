"""
End-to-end scenarios: ordered checks against any RemoteSystem.

Every check names the exact outcome it expects. Expected business rejections
pass only when the remote reports the named module error.
"""

import logging
import time
from typing import Any, Awaitable, Callable, Dict, Optional

from .. import calls, intent, storage
from ..config import (
    MAX_MINER_SCORE,
    MODULE_AGENT_ATTESTATION,
    MODULE_COMPUTE_POOL,
    MODULE_SETTLEMENT,
    MODULE_TASK_MODE,
    MODULE_ZK_COMPUTE,
    SCORE_ON_SUCCESS,
    UNIT,
)
from ..crypto import Keypair
from ..dev_accounts import (
    ALICE,
    ALICE_KEY,
    BOB,
    BOB_KEY,
    CHARLIE,
    CHARLIE_KEY,
    FACILITATOR,
    FACILITATOR_KEY,
)
from ..engine import ConfirmationEngine, describe
from ..remote import RemoteSystem
from ..types import IntentStatus, ZkStatus
from .checks import Expectation, OutcomeComparator
from .reporter import CheckResult, ResultAccumulator

logger = logging.getLogger(__name__)


class ScenarioStopped(Exception):
    """Raised to end a scenario early after a failed check."""


class ScenarioContext:
    """What a scenario needs: the remote, the engine and its result accumulator."""

    def __init__(
        self,
        remote: RemoteSystem,
        engine: ConfirmationEngine,
        accumulator: ResultAccumulator,
        timeout: float,
        settlement_delay: int,
        comparator: Optional[OutcomeComparator] = None,
    ):
        self.remote = remote
        self.engine = engine
        self.accumulator = accumulator
        self.timeout = timeout
        self.settlement_delay = settlement_delay
        self.comparator = comparator or OutcomeComparator()

    def _record(self, result: CheckResult) -> CheckResult:
        self.accumulator.record(result)
        status = "PASS" if result.passed else "FAIL"
        logger.info("  [%s] %s: %s", status, result.name, result.outcome)
        for div in result.divergences:
            logger.info("         %s: expected %s, got %s", div.field, div.expected, div.actual)
        if self.accumulator.should_stop:
            raise ScenarioStopped(f"stopped after failed check {result.name}")
        return result

    async def expect(
        self, name: str, call: calls.Call, signer: Keypair, expectation: Expectation
    ) -> CheckResult:
        start = time.time()
        op = calls.operation(call, signer, label=name)
        outcome = await self.engine.execute(op, signer, self.timeout)
        divergences = self.comparator.compare(expectation, outcome, name)
        return self._record(CheckResult(
            name=name,
            scenario=self.accumulator.scenario,
            passed=not divergences,
            execution_time_ms=(time.time() - start) * 1000,
            outcome=describe(outcome),
            divergences=divergences,
        ))

    def expect_value(self, name: str, field_name: str, expected: Any, actual: Any) -> CheckResult:
        divergences = self.comparator.compare_value(field_name, expected, actual, name)
        return self._record(CheckResult(
            name=name,
            scenario=self.accumulator.scenario,
            passed=not divergences,
            execution_time_ms=0.0,
            outcome=f"{field_name} = {actual}",
            divergences=divergences,
        ))

    def skip(self, name: str, reason: str) -> CheckResult:
        return self._record(CheckResult(
            name=name,
            scenario=self.accumulator.scenario,
            passed=True,
            execution_time_ms=0.0,
            outcome=f"skipped: {reason}",
            skipped=True,
        ))

    async def intent_status(self, intent_id: int) -> Optional[IntentStatus]:
        record = await storage.read_intent(self.remote, intent_id)
        return record.status if record is not None else None


# --- Task mode ---


async def task_mode(ctx: ScenarioContext) -> None:
    definition_id = await storage.read_counter(ctx.remote, storage.next_definition_id_key())

    await ctx.expect(
        "1.1 createTaskDefinition",
        calls.create_task_definition(
            b"gpt-4-turbo", b"v1.0", 1_000_000, 2_000_000, 4096, b"QmTestCid12345"
        ),
        ALICE_KEY,
        Expectation.confirmed(f"{MODULE_TASK_MODE}.TaskDefinitionCreated"),
    )
    await ctx.expect(
        "1.2 updateTaskDefinition",
        calls.update_task_definition(definition_id, 1_200_000, 2_400_000, 8192, None),
        ALICE_KEY,
        Expectation.confirmed(f"{MODULE_TASK_MODE}.TaskDefinitionUpdated"),
    )
    await ctx.expect(
        "1.3 createTaskOrder without a price oracle",
        calls.create_task_order(definition_id, BOB, 100, 50),
        ALICE_KEY,
        Expectation.module_error_of(MODULE_TASK_MODE, "PriceOracleUnavailable"),
    )


# --- Compute pool ---


async def compute_pool(ctx: ScenarioContext) -> None:
    pool_id = await storage.read_counter(ctx.remote, storage.next_pool_id_key())

    await ctx.expect(
        "2.1 registerPool",
        calls.register_pool(b"RTX4090", 24576, True, 130, 1000 * UNIT),
        ALICE_KEY,
        Expectation.confirmed(f"{MODULE_COMPUTE_POOL}.PoolRegistered"),
    )
    await ctx.expect(
        "2.2 updatePoolConfig",
        calls.update_pool_config(pool_id, b"A100-80G", 81920, True, 135, 1500 * UNIT),
        ALICE_KEY,
        Expectation.confirmed(f"{MODULE_COMPUTE_POOL}.PoolConfigUpdated"),
    )

    task_id = await storage.read_counter(ctx.remote, storage.next_task_id_key())
    await ctx.expect(
        "2.3 submitTask",
        calls.submit_task(256, 256, 128, calls.PRIORITY_NORMAL, None),
        BOB_KEY,
        Expectation.confirmed(
            f"{MODULE_COMPUTE_POOL}.TaskSubmitted", f"{MODULE_COMPUTE_POOL}.TaskAssigned"
        ),
    )
    await ctx.expect(
        "2.4 submitProof",
        calls.submit_proof(task_id, b"\xff" * 32),
        ALICE_KEY,
        Expectation.confirmed(f"{MODULE_COMPUTE_POOL}.ProofSubmitted"),
    )
    await ctx.expect(
        "2.5 pool owner cannot verify own proof",
        calls.verify_proof(task_id, True),
        ALICE_KEY,
        Expectation.module_error_of(MODULE_COMPUTE_POOL, "SelfVerificationNotAllowed"),
    )
    await ctx.expect(
        "2.6 verifyProof by independent verifier",
        calls.verify_proof(task_id, True),
        CHARLIE_KEY,
        Expectation.confirmed(
            f"{MODULE_COMPUTE_POOL}.ProofVerified", f"{MODULE_COMPUTE_POOL}.RewardAvailable"
        ),
    )
    await ctx.expect(
        "2.7 claimReward",
        calls.claim_reward(task_id),
        ALICE_KEY,
        Expectation.confirmed(f"{MODULE_COMPUTE_POOL}.RewardClaimed"),
    )

    staked = await storage.read_stake(ctx.remote, pool_id, CHARLIE)
    await ctx.expect(
        "2.8 stakeToPool",
        calls.stake_to_pool(pool_id, 100 * UNIT),
        CHARLIE_KEY,
        Expectation.confirmed(f"{MODULE_COMPUTE_POOL}.Staked"),
    )
    ctx.expect_value(
        "2.8 stake recorded",
        "stake",
        staked + 100 * UNIT,
        await storage.read_stake(ctx.remote, pool_id, CHARLIE),
    )
    await ctx.expect(
        "2.9 unstakeFromPool",
        calls.unstake_from_pool(pool_id, 50 * UNIT),
        CHARLIE_KEY,
        Expectation.confirmed(f"{MODULE_COMPUTE_POOL}.Unstaked"),
    )
    ctx.expect_value(
        "2.9 stake reduced",
        "stake",
        staked + 50 * UNIT,
        await storage.read_stake(ctx.remote, pool_id, CHARLIE),
    )


# --- Agent attestation ---

MODEL_ID = b"gpt-4-turbo"


async def agent_attestation(ctx: ScenarioContext) -> None:
    attestation_id = await storage.read_counter(ctx.remote, storage.next_attestation_id_key())

    await ctx.expect(
        "3.1 registerNode",
        calls.register_node(b"GPU-uuid-0001-abcd-efgh", 100),
        ALICE_KEY,
        Expectation.confirmed(f"{MODULE_AGENT_ATTESTATION}.NodeRegistered"),
    )
    node = await storage.read_node(ctx.remote, ALICE)
    ctx.expect_value("3.1 node registered", "tflops", 100, node.tflops if node is not None else None)
    await ctx.expect(
        "3.1a heartbeat before the interval",
        calls.heartbeat(),
        ALICE_KEY,
        Expectation.module_error_of(MODULE_AGENT_ATTESTATION, "HeartbeatTooEarly"),
    )

    await ctx.expect(
        "3.2 updateCapability",
        calls.update_capability([MODEL_ID], 10, 1_000_000, b"us-east"),
        ALICE_KEY,
        Expectation.confirmed(f"{MODULE_AGENT_ATTESTATION}.AgentCapabilityUpdated"),
    )
    await ctx.expect(
        "3.3 registerNode (Bob)",
        calls.register_node(b"GPU-uuid-0002-ijkl-mnop", 100),
        BOB_KEY,
        Expectation.confirmed(f"{MODULE_AGENT_ATTESTATION}.NodeRegistered"),
    )
    await ctx.expect(
        "3.4 submitAttestation",
        calls.submit_attestation(0, b"\xee" * 32, MODEL_ID, 100, 50),
        BOB_KEY,
        Expectation.confirmed(f"{MODULE_AGENT_ATTESTATION}.AttestationSubmitted"),
    )
    ctx.expect_value(
        "3.4 attestation stored",
        "next_attestation_id",
        attestation_id + 1,
        await storage.read_counter(ctx.remote, storage.next_attestation_id_key()),
    )
    await ctx.expect(
        "3.5 confirm inside the challenge window",
        calls.confirm_attestation(attestation_id),
        ALICE_KEY,
        Expectation.module_error_of(MODULE_AGENT_ATTESTATION, "ChallengeWindowNotExpired"),
    )


# --- Zero-knowledge compute ---


async def zk_compute(ctx: ScenarioContext) -> None:
    task_id = await storage.read_counter(ctx.remote, storage.next_zk_task_id_key())
    score = await storage.read_miner_score(ctx.remote, ALICE)
    submit = calls.submit_zk_proof(b"zk-snark-proof-data-v2", (256, 256, 128), 130, 1)

    await ctx.expect(
        "4.1 submitProof",
        submit,
        ALICE_KEY,
        Expectation.confirmed(f"{MODULE_ZK_COMPUTE}.ProofSubmitted"),
    )
    task = await storage.read_zk_task(ctx.remote, task_id)
    ctx.expect_value("4.1 proof stored", "status", ZkStatus.PENDING, task.status if task is not None else None)

    await ctx.expect(
        "4.2 verifyTask",
        calls.verify_zk_task(task_id),
        BOB_KEY,
        Expectation.confirmed(
            f"{MODULE_ZK_COMPUTE}.MinerScoreUpdated", f"{MODULE_ZK_COMPUTE}.ProofVerified"
        ),
    )
    task = await storage.read_zk_task(ctx.remote, task_id)
    ctx.expect_value("4.2 proof verified", "status", ZkStatus.VERIFIED, task.status if task is not None else None)
    ctx.expect_value(
        "4.2 miner score raised",
        "score",
        min(score + SCORE_ON_SUCCESS, MAX_MINER_SCORE),
        await storage.read_miner_score(ctx.remote, ALICE),
    )
    await ctx.expect(
        "4.2a replayed proof nonce",
        submit,
        ALICE_KEY,
        Expectation.module_error_of(MODULE_ZK_COMPUTE, "NonceAlreadyUsed"),
    )

    await ctx.expect(
        "4.3 claimReward",
        calls.claim_zk_reward(task_id),
        ALICE_KEY,
        Expectation.confirmed(f"{MODULE_ZK_COMPUTE}.RewardClaimed"),
    )
    await ctx.expect(
        "4.3a claimReward twice",
        calls.claim_zk_reward(task_id),
        ALICE_KEY,
        Expectation.module_error_of(MODULE_ZK_COMPUTE, "RewardAlreadyClaimed"),
    )


# --- Settlement ---

SETTLEMENT_AMOUNT = 500 * UNIT
FACILITATOR_FUNDING = 10_000 * UNIT


async def settlement(ctx: ScenarioContext) -> None:
    intent_id = await storage.read_counter(ctx.remote, storage.next_intent_id_key())

    first = intent.new_intent(ALICE, BOB, SETTLEMENT_AMOUNT, 1, b"\x01" * 32, FACILITATOR_KEY)
    await ctx.expect(
        "5.1 submitPaymentIntent",
        calls.submit_payment_intent(first),
        ALICE_KEY,
        Expectation.confirmed(f"{MODULE_SETTLEMENT}.PaymentIntentSubmitted"),
    )
    ctx.expect_value(
        "5.1 intent stored", "status", IntentStatus.SUBMITTED, await ctx.intent_status(intent_id)
    )

    await ctx.expect(
        "5.2a fund facilitator",
        calls.transfer_keep_alive(FACILITATOR, FACILITATOR_FUNDING),
        ALICE_KEY,
        Expectation.confirmed(),
    )
    await ctx.expect(
        "5.2 verifySettlement",
        calls.verify_settlement(intent_id),
        FACILITATOR_KEY,
        Expectation.confirmed(f"{MODULE_SETTLEMENT}.PaymentIntentVerified"),
    )

    record = await storage.read_intent(ctx.remote, intent_id)
    verified_at = record.verified_at if record is not None and record.verified_at is not None else 0

    early = "5.3a finalize before the settlement delay"
    next_block = await ctx.remote.current_height() + 1
    if next_block < verified_at + ctx.settlement_delay:
        await ctx.expect(
            early,
            calls.finalize_settlement(intent_id),
            ALICE_KEY,
            Expectation.module_error_of(MODULE_SETTLEMENT, intent.SETTLEMENT_DELAY_NOT_MET),
        )
    else:
        ctx.skip(early, f"block {next_block} already meets the delay of {ctx.settlement_delay}")

    height = await intent.wait_for_cycles(ctx.remote, verified_at, ctx.settlement_delay, ctx.timeout)
    logger.info("  settlement delay elapsed at height %d", height)

    await ctx.expect(
        "5.3 finalizeSettlement",
        calls.finalize_settlement(intent_id),
        ALICE_KEY,
        Expectation.confirmed(f"{MODULE_SETTLEMENT}.PaymentIntentSettled"),
    )
    ctx.expect_value(
        "5.3 intent settled", "status", IntentStatus.FINALIZED, await ctx.intent_status(intent_id)
    )

    second = intent.new_intent(ALICE, BOB, SETTLEMENT_AMOUNT, 2, b"\x02" * 32, FACILITATOR_KEY)
    await ctx.expect(
        "5.4 submitPaymentIntent (for fail test)",
        calls.submit_payment_intent(second),
        ALICE_KEY,
        Expectation.confirmed(f"{MODULE_SETTLEMENT}.PaymentIntentSubmitted"),
    )
    await ctx.expect(
        "5.4a replayed intent nonce",
        calls.submit_payment_intent(second),
        ALICE_KEY,
        Expectation.module_error_of(MODULE_SETTLEMENT, intent.INVALID_NONCE),
    )
    await ctx.expect(
        "5.5 failPaymentIntent",
        calls.fail_payment_intent(intent_id + 1),
        FACILITATOR_KEY,
        Expectation.confirmed(f"{MODULE_SETTLEMENT}.PaymentIntentFailed"),
    )
    ctx.expect_value(
        "5.5 intent failed", "status", IntentStatus.FAILED, await ctx.intent_status(intent_id + 1)
    )

    forged = intent.new_intent(ALICE, BOB, SETTLEMENT_AMOUNT, 3, b"\x03" * 32, ALICE_KEY)
    await ctx.expect(
        "5.6 submit intent with a non-facilitator signature",
        calls.submit_payment_intent(forged),
        ALICE_KEY,
        Expectation.confirmed(f"{MODULE_SETTLEMENT}.PaymentIntentSubmitted"),
    )
    await ctx.expect(
        "5.7 verification rejects the signature",
        calls.verify_settlement(intent_id + 2),
        FACILITATOR_KEY,
        Expectation.confirmed(f"{MODULE_SETTLEMENT}.PaymentIntentFailed"),
    )
    ctx.expect_value(
        "5.7 forged intent failed", "status", IntentStatus.FAILED, await ctx.intent_status(intent_id + 2)
    )


Scenario = Callable[[ScenarioContext], Awaitable[None]]

SCENARIOS: Dict[str, Scenario] = {
    "task_mode": task_mode,
    "compute_pool": compute_pool,
    "agent_attestation": agent_attestation,
    "zk_compute": zk_compute,
    "settlement": settlement,
}
