"""chainprobe configuration constants.

Keep this file aligned with the dev chain runtime constants
(`SettlementDelay`, `MaxSignatureLen`, facilitator seed) the harness is
pointed at.
"""

# Canonical payment-intent message
IDENTITY_SIZE = 32
AMOUNT_SIZE = 16  # u128
NONCE_SIZE = 8  # u64
FINGERPRINT_SIZE = 32
CANONICAL_MESSAGE_SIZE = IDENTITY_SIZE * 2 + AMOUNT_SIZE + NONCE_SIZE + FINGERPRINT_SIZE  # 120

U64_MAX = (1 << 64) - 1
U128_MAX = (1 << 128) - 1

# Signatures (Ed25519)
SIGNATURE_SIZE = 64
SEED_SIZE = 32
MAX_SIGNATURE_LEN = 64

# Units
UNIT_DECIMALS = 9
UNIT = 10**UNIT_DECIMALS

# Settlement
SETTLEMENT_DELAY_BLOCKS = 5
FACILITATOR_SEED = bytes([1]) * SEED_SIZE

# Confirmation engine
DEFAULT_TIMEOUT_SECS = 30.0
DEFAULT_POLL_INTERVAL_SECS = 0.5

# Namespaces emitted for fee/accounting bookkeeping; filtered from Confirmed outcomes.
INFRASTRUCTURE_NAMESPACES = frozenset({
    "system",
    "balances",
    "transactionPayment",
})

# Module names as reported by the remote system
MODULE_SYSTEM = "system"
MODULE_BALANCES = "balances"
MODULE_TX_PAYMENT = "transactionPayment"
MODULE_SETTLEMENT = "x402Settlement"
MODULE_COMPUTE_POOL = "computePoolScheduler"
MODULE_TASK_MODE = "taskMode"
MODULE_AGENT_ATTESTATION = "agentAttestation"
MODULE_ZK_COMPUTE = "zkCompute"

# Dev ledger
GENESIS_BALANCE = 1_000_000 * UNIT
EXISTENTIAL_DEPOSIT = UNIT // 1000
TX_FEE = UNIT // 100
DEFAULT_BLOCK_TIME_SECS = 0.5

# computePoolScheduler
POOL_DEPOSIT = 100 * UNIT
TASK_DEPOSIT = 10 * UNIT
BASE_NVLINK_EFFICIENCY = 100  # percent; pools without NVLink must report exactly this
MIN_NVLINK_EFFICIENCY = 120
MAX_NVLINK_EFFICIENCY = 150
COMPLEXITY_UNIT = 1_000_000  # m*n*k per price unit

# taskMode prices are quoted per 1k tokens in micro-USD; the oracle price is micro-USD per UNIT
TOKENS_PER_PRICE_UNIT = 1000
MAX_MODEL_ID_LEN = 64
MAX_POLICY_CID_LEN = 128

# agentAttestation
ATTESTATION_DEPOSIT = 10 * UNIT
CHALLENGE_WINDOW_BLOCKS = 50
SLASH_PERCENT = 50
HEARTBEAT_INTERVAL_BLOCKS = 100
MAX_GPU_UUID_LEN = 128
MAX_MODELS_PER_AGENT = 8
MAX_REGION_LEN = 16

# zkCompute; the reward pool is a module account, "modl" ++ module id, zero padded
ZK_PALLET_ACCOUNT = b"modlzkc/mpal".ljust(IDENTITY_SIZE, b"\x00")
ZK_REWARD_POOL = 100_000 * UNIT
ZK_BASE_REWARD = UNIT
ZK_SUBMISSION_DEPOSIT = UNIT
ZK_REWARD_DIVISOR = 100_000_000  # base * m*n*k * multiplier_q100 / divisor
MAX_PROOF_SIZE = 1024
MAX_ZK_PENDING_TASKS = 32
MAX_ZK_VERIFIED_TASKS = 64
MAX_ZK_PENDING_PER_MINER = 2
ZK_VERIFICATION_TIMEOUT_BLOCKS = 5
INITIAL_MINER_SCORE = 50
MIN_MINER_SCORE_TO_SUBMIT = 10
MAX_MINER_SCORE = 100
SCORE_ON_SUCCESS = 10
SCORE_PENALTY_ON_FAILURE = 20
MIN_ZK_MULTIPLIER = 120
MAX_ZK_MULTIPLIER = 150
