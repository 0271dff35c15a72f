"""Fixed-point scales and protocol-wide constants."""

# Governance fractions (risk factors, fees, yearly rate) are scaled by 1e9
DENOMINATOR = 10**9

# Q64.96 square-root prices and priceX96 quotes
Q96 = 2**96

# Q128.128 per-liquidity fee growth counters
Q128 = 2**128

# Global fee-per-unit-debt index scale
FEE_INDEX_SCALE = 10**18

UINT256_MAX = 2**256 - 1

YEAR = 365 * 24 * 60 * 60  # seconds

# Tick bounds of the supported concentrated-liquidity venues
MIN_TICK = -887272
MAX_TICK = 887272
MIN_SQRT_RATIO = 4295128739
MAX_SQRT_RATIO = 1461446703485210103287273052203988822378723970342

# Debt token
DEBT_TOKEN_DECIMALS = 18

# Defaults used when configuration omits a value
DEFAULT_LIQUIDATION_THRESHOLD_D = 600_000_000  # 60%
DEFAULT_LIQUIDATION_FEE_D = 30_000_000  # 3%
DEFAULT_LIQUIDATION_PREMIUM_D = 30_000_000  # 3%
DEFAULT_MAX_POSITIONS_PER_VAULT = 20
DEFAULT_PRICE_VALID_PERIOD = 3600  # seconds
