"""Contract addresses, event topics and protocol constants for TORUS on Ethereum mainnet."""

from __future__ import annotations

from decimal import Decimal

from .utils import event_topic

DEFAULT_RPC_URLS = [
    "https://ethereum.publicnode.com",
    "https://eth.llamarpc.com",
    "https://eth.drpc.org",
    "https://rpc.payload.de",
    "https://eth-mainnet.public.blastapi.io",
]

TORUS_TOKEN = "0xb47f575807fc5466285e1277ef8acfbb5c6686e8"
CREATE_STAKE = "0xc7cc775b21f9df85e043c7fdd9dac60af0b69507"
BUY_PROCESS = "0xaa390a37006e22b5775a34f2147f81ebd6a63641"
TITANX = "0xf19308f923582a6f7c465e5ce7a9dc1bec6665b1"
WETH = "0xc02aaa39b223fe8d0a0e5c4f27ead9083c756cc2"
POSITION_MANAGER = "0xc36442b4a4522e871399cd717abdd847ab11fe88"
TORUS_TITANX_POOL = "0x7ff1f30f6e7eec2ff3f0d1b60739115bdf88190f"
TORUS_TITANX_POOL_FEE = 10_000

DEPLOYMENT_BLOCK = 22_890_272

SIG_CREATED = "Created(address,uint256,uint256,uint256)"
SIG_STAKED = "Staked(address,uint256,uint256,uint256,uint256)"
SIG_BUY_AND_BURN = "BuyAndBurn(uint256,uint256,address)"
SIG_BUY_AND_BUILD = "BuyAndBuild(uint256,uint256,address)"
SIG_FRACTAL = "FractalFundsReleased(uint256,uint256)"
SIG_TRANSFER = "Transfer(address,address,uint256)"
SIG_WETH_DEPOSIT = "Deposit(address,uint256)"
SIG_INCREASE_LIQUIDITY = "IncreaseLiquidity(uint256,uint128,uint256,uint256)"
SIG_DECREASE_LIQUIDITY = "DecreaseLiquidity(uint256,uint128,uint256,uint256)"
SIG_POOL_MINT = "Mint(address,address,int24,int24,uint128,uint256,uint256)"

TOPIC0_CREATED = event_topic(SIG_CREATED)
TOPIC0_STAKED = event_topic(SIG_STAKED)
TOPIC0_BUY_AND_BURN = event_topic(SIG_BUY_AND_BURN)
TOPIC0_BUY_AND_BUILD = event_topic(SIG_BUY_AND_BUILD)
TOPIC0_FRACTAL = event_topic(SIG_FRACTAL)
TOPIC0_TRANSFER = event_topic(SIG_TRANSFER)
TOPIC0_WETH_DEPOSIT = event_topic(SIG_WETH_DEPOSIT)
TOPIC0_INCREASE_LIQUIDITY = event_topic(SIG_INCREASE_LIQUIDITY)
TOPIC0_DECREASE_LIQUIDITY = event_topic(SIG_DECREASE_LIQUIDITY)
TOPIC0_POOL_MINT = event_topic(SIG_POOL_MINT)

# Function signatures read through eth_call.
FN_GET_STAKE_POSITIONS = "getStakePositions(address)"
FN_REWARD_POOL = "rewardPool(uint24)"
FN_TOTAL_SHARES = "totalShares(uint24)"
FN_PENALTIES_IN_REWARD_POOL = "penaltiesInRewardPool(uint24)"
FN_POSITIONS = "positions(uint256)"
FN_OWNER_OF = "ownerOf(uint256)"

# Buy & Process entry points that pay in ETH (first 4 bytes of calldata).
SELECTOR_ETH_BURN = "0x39b6ce64"
SELECTOR_ETH_BUILD = "0x53ad9b96"

# Protocol day 1 starts 2025-07-10T18:00:00Z; days roll at 18:00 UTC.
CONTRACT_START_TS = 1_752_170_400
SECONDS_PER_DAY = 86_400

INITIAL_REWARD_POOL = Decimal("100000")
DAILY_REDUCTION_RATE = Decimal("0.0008")
BASE_REWARD_DAYS = 88
MAX_PROJECTION_DAY = 365
PROJECTION_HORIZON_DAYS = 88

MAX_BLOCK_RANGE = 10_000
MIN_NEW_BLOCKS = 10
BACKUP_KEEP = 5
