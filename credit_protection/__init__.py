"""
credit_protection - Protection Pool Engine

Economic and state-tracking engine for pools that sell credit protection on
referenced loans. Sellers deposit capital for pool shares; buyers pay a
premium to protect a lending position; premium accrues to sellers over the
protection's life; capital is locked when a referenced loan goes late.

Usage:
    from decimal import Decimal
    from credit_protection import (
        ManualClock, TokenLedger, StaticLendingAdapter, AdapterRegistry,
        ReferenceLendingPools, PoolCycleManager, DefaultStateManager,
        ProtectionPool, ProtectionPurchaseParams, load_pool_config,
    )

    clock = ManualClock(start=1_700_000_000)
    tokens = TokenLedger("main")
    adapter = StaticLendingAdapter(clock)
    adapter.add_loan("loan-1", apr=Decimal("0.17"), payment_period_days=30,
                     term_end_timestamp=clock.now + 365 * 86400)
    registry = AdapterRegistry()
    registry.register("goldfinch", adapter)
    basket = ReferenceLendingPools(clock, registry, owner="owner")
    basket.add_reference_lending_pool("owner", "loan-1", "goldfinch", 90)

    dsm = DefaultStateManager(clock)
    pool = ProtectionPool("pool-1", "owner", load_pool_config("pool.json"), clock,
                          basket, PoolCycleManager(clock), dsm, tokens)
    dsm.register_protection_pool(pool)

    pool.deposit("alice", Decimal("100000"))
"""

# Core types
from .core import (
    LoanStatus,
    PoolCycleState,
    PoolPhase,
    ProtectionPurchaseParams,
    LockedCapital,
    Move,
    ManualClock,
    Clock,
    LendingProtocolAdapter,
    ShareToken,
    UnderlyingToken,
    TransactionalState,
    ReentrancyGuard,
    atomic,
    to_decimal,
    to_fixed,
    round_down_to,
    SECONDS_PER_DAY,
    DAYS_PER_YEAR,
    LATE_PAYMENT_GRACE_PERIOD_DAYS,
    WITHDRAWAL_CYCLE_OFFSET,
    MIN_RENEWAL_DURATION,
    # Errors
    ProtectionPoolError,
    ValidationError,
    AuthorizationError,
    StateError,
    InsufficientFunds,
    UnitNotRegistered,
    NotOwner,
    CallerNotDefaultStateManager,
    PoolNotRegistered,
    PoolAlreadyRegistered,
    InvalidCycleDuration,
    ReentrantCall,
    PoolPaused,
    PoolNotPaused,
    PoolInOpenToSellersPhase,
    PoolInOpenToBuyersPhase,
    PoolIsNotOpen,
    PoolLeverageRatioTooLow,
    PoolLeverageRatioTooHigh,
    ProtectionDurationTooShort,
    ProtectionDurationTooLong,
    PremiumExceedsMaxPremiumAmount,
    ProtectionPurchaseNotAllowed,
    ProtectionAlreadyExistsForLendingPosition,
    LendingPoolNotSupported,
    LendingPoolHasLatePayment,
    LendingPoolExpired,
    LendingPoolDefaulted,
    NoExpiredProtectionToRenew,
    CanNotRenewProtectionAfterGracePeriod,
    NoWithdrawalRequested,
    WithdrawalHigherThanRequested,
    InsufficientShareBalance,
    LendingPoolAlreadyAdded,
    LendingPoolNotActive,
    LendingProtocolNotSupported,
    BatchAssessmentError,
    InvariantViolation,
    RiskFactorDomainError,
    NegativeAccruedPremium,
    LockedCapitalInvariantError,
)

# Configuration
from .config import (
    PoolParams,
    PoolCycleParams,
    PoolConfig,
    load_pool_params,
    load_cycle_params,
    load_pool_config,
    configure_logging,
)

# Calculators
from .risk_factor import (
    calculate_risk_factor,
    calculate_risk_factor_using_min_premium,
    can_calculate_risk_factor,
)
from .accrued_premium import calculate_k_and_lambda, calculate_accrued_premium
from .premium import PremiumQuote, calculate_premium, calculate_carapace_premium_rate
from .premium_curve import (
    risk_factor_curve,
    premium_rate_curve,
    accrual_curve,
    daily_accrual_schedule,
    implied_leverage_ratio,
)

# Collaborators
from .token_ledger import TokenLedger, TokenUnit, PoolShareToken, UnderlyingAsset, MINT_WALLET
from .adapters import StaticLendingAdapter, AdapterRegistry, LoanRecord
from .lending_pools import ReferenceLendingPools, ReferenceLendingPoolInfo

# Pool components
from .cycle_manager import PoolCycle, PoolCycleManager
from .pool_state import PoolInfo, PoolTotals
from .capital_ledger import CapitalLedger, WithdrawalCycleDetail
from .protection_ledger import (
    Protection,
    LendingPoolDetail,
    BuyerAccount,
    AccrualResult,
    ProtectionLedger,
)
from .protection_pool import ProtectionPool, PoolDetails, PoolInfoView
from .default_state_manager import (
    DefaultStateManager, LoanStatusDetail, PoolState, PoolStateCheckpoint,
)

__all__ = [
    # Core
    'LoanStatus', 'PoolCycleState', 'PoolPhase', 'ProtectionPurchaseParams',
    'LockedCapital', 'Move', 'ManualClock', 'Clock', 'LendingProtocolAdapter',
    'ShareToken', 'UnderlyingToken', 'TransactionalState', 'ReentrancyGuard',
    'atomic', 'to_decimal', 'to_fixed', 'round_down_to',
    'SECONDS_PER_DAY', 'DAYS_PER_YEAR', 'LATE_PAYMENT_GRACE_PERIOD_DAYS',
    'WITHDRAWAL_CYCLE_OFFSET', 'MIN_RENEWAL_DURATION',
    # Errors
    'ProtectionPoolError', 'ValidationError', 'AuthorizationError', 'StateError',
    'InsufficientFunds', 'UnitNotRegistered', 'NotOwner', 'CallerNotDefaultStateManager',
    'PoolNotRegistered', 'PoolAlreadyRegistered', 'InvalidCycleDuration', 'ReentrantCall',
    'PoolPaused', 'PoolNotPaused', 'PoolInOpenToSellersPhase', 'PoolInOpenToBuyersPhase',
    'PoolIsNotOpen', 'PoolLeverageRatioTooLow', 'PoolLeverageRatioTooHigh',
    'ProtectionDurationTooShort', 'ProtectionDurationTooLong',
    'PremiumExceedsMaxPremiumAmount', 'ProtectionPurchaseNotAllowed',
    'ProtectionAlreadyExistsForLendingPosition', 'LendingPoolNotSupported',
    'LendingPoolHasLatePayment', 'LendingPoolExpired', 'LendingPoolDefaulted',
    'NoExpiredProtectionToRenew', 'CanNotRenewProtectionAfterGracePeriod',
    'NoWithdrawalRequested', 'WithdrawalHigherThanRequested', 'InsufficientShareBalance',
    'LendingPoolAlreadyAdded', 'LendingPoolNotActive', 'LendingProtocolNotSupported',
    'BatchAssessmentError', 'InvariantViolation', 'RiskFactorDomainError',
    'NegativeAccruedPremium', 'LockedCapitalInvariantError',
    # Configuration
    'PoolParams', 'PoolCycleParams', 'PoolConfig', 'load_pool_params',
    'load_cycle_params', 'load_pool_config', 'configure_logging',
    # Calculators
    'calculate_risk_factor', 'calculate_risk_factor_using_min_premium',
    'can_calculate_risk_factor', 'calculate_k_and_lambda', 'calculate_accrued_premium',
    'PremiumQuote', 'calculate_premium', 'calculate_carapace_premium_rate',
    'risk_factor_curve', 'premium_rate_curve', 'accrual_curve',
    'daily_accrual_schedule', 'implied_leverage_ratio',
    # Collaborators
    'TokenLedger', 'TokenUnit', 'PoolShareToken', 'UnderlyingAsset', 'MINT_WALLET',
    'StaticLendingAdapter', 'AdapterRegistry', 'LoanRecord',
    'ReferenceLendingPools', 'ReferenceLendingPoolInfo',
    # Pool components
    'PoolCycle', 'PoolCycleManager', 'PoolInfo', 'PoolTotals',
    'CapitalLedger', 'WithdrawalCycleDetail',
    'Protection', 'LendingPoolDetail', 'BuyerAccount', 'AccrualResult', 'ProtectionLedger',
    'ProtectionPool', 'PoolDetails', 'PoolInfoView',
    'DefaultStateManager', 'LoanStatusDetail', 'PoolState', 'PoolStateCheckpoint',
]
