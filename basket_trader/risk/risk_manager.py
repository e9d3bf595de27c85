"""Risk gate - validates candidate trades and assesses the portfolio.

This module implements the static-limit risk framework of the trading stack:
ordered, short-circuiting trade validation, periodic portfolio assessment
with WARNING/CRITICAL alerts, the position-sizing advisor and the emergency
stop.

CRITICAL: Any changes to this file must be reviewed and tested thoroughly.
Incorrect risk controls can lead to catastrophic losses.
"""
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Any, Awaitable, Callable, Dict, List, Optional

import structlog

from basket_trader.core.config import (
    AlertThresholdConfig,
    RiskLimitsConfig,
    SizingConfig,
    load_risk_limits,
)
from basket_trader.core.exceptions import ConfigurationError
from basket_trader.core.models import (
    Alert,
    AlertLevel,
    PortfolioRiskSnapshot,
    RiskMetrics,
    RiskStatus,
    RiskTier,
    Signal,
    TradeAction,
)

logger = structlog.get_logger(__name__)

# Async hook invoked for every CRITICAL alert (email, chat, pager, ...)
AlertNotifier = Callable[[Alert], Awaitable[None]]


@dataclass
class RiskCheck:
    """Result of a risk validation check.

    A rejected trade is an expected outcome and is returned, never raised.

    Attributes:
        passed: Whether the trade passed all risk checks
        reason: Human-readable explanation
        risk_level: Severity level of the assessment
        rule_triggered: Name of the risk rule that rejected the trade (if any)
        metadata: Additional diagnostic information
    """
    passed: bool
    reason: str = ""
    risk_level: str = "normal"
    rule_triggered: Optional[str] = None
    metadata: Dict[str, Any] = field(default_factory=dict)

    @property
    def valid(self) -> bool:
        return self.passed


@dataclass
class TradeCandidate:
    """A sized trade awaiting validation."""
    token: str
    position_value_usd: Decimal
    signal: Optional[Signal] = None


@dataclass
class RiskRule:
    """Individual risk rule definition.

    Attributes:
        name: Unique identifier for the rule
        check_fn: Function that performs the validation
        priority: Lower numbers = higher priority (checked first)
    """
    name: str
    check_fn: Callable[[TradeCandidate], RiskCheck]
    priority: int = 100


class RiskGate:
    """
    Central risk gate for the live trading path.

    Trade validation runs these rules in order and stops at the first
    failure:
    0. Emergency stop active
    1. Position value above max_position_size_pct of the portfolio
    2. Daily P&L below -max_daily_loss_pct
    3. Drawdown above max_drawdown_pct
    4. Portfolio volatility above max_volatility
    5. Position value below min_liquidity_usd
    """

    PASS_REASON = "passed all risk checks"
    MAX_REJECTION_LOG = 1000

    def __init__(
        self,
        limits: Optional[RiskLimitsConfig] = None,
        thresholds: Optional[AlertThresholdConfig] = None,
        sizing: Optional[SizingConfig] = None,
        notifier: Optional[AlertNotifier] = None
    ):
        self.limits = limits or load_risk_limits()
        self.thresholds = thresholds or AlertThresholdConfig()
        self.sizing = sizing or SizingConfig()
        self.notifier = notifier

        # Portfolio value tracking
        self.portfolio_value: Decimal = Decimal("0")
        self.peak_value: Optional[Decimal] = None
        self.day_start_value: Optional[Decimal] = None
        self.last_reset_day: Optional[datetime] = None
        self.metrics = RiskMetrics()

        # Alerts
        self.alerts: List[Alert] = []

        # Emergency stop
        self.emergency_stop = False
        self.emergency_reason: Optional[str] = None
        self.emergency_triggered_at: Optional[datetime] = None

        # Audit
        self.rejected_trades: List[Dict] = []

        self._risk_rules: List[RiskRule] = []
        self._register_default_rules()

    def _register_default_rules(self):
        """Register the default set of risk rules in priority order."""
        self._risk_rules = [
            RiskRule(name="emergency_stop", check_fn=self._check_emergency_stop, priority=0),
            RiskRule(name="max_position_size", check_fn=self._check_position_size, priority=1),
            RiskRule(name="daily_loss_limit", check_fn=self._check_daily_loss, priority=2),
            RiskRule(name="drawdown_limit", check_fn=self._check_drawdown, priority=3),
            RiskRule(name="volatility_limit", check_fn=self._check_volatility, priority=4),
            RiskRule(name="min_liquidity", check_fn=self._check_liquidity, priority=5),
        ]
        self._risk_rules.sort(key=lambda r: r.priority)

    async def initialize(self, portfolio_value: Decimal):
        """Initialize tracking with the current portfolio value."""
        now = datetime.utcnow()
        self.portfolio_value = portfolio_value
        self.peak_value = portfolio_value
        self.day_start_value = portfolio_value
        self.last_reset_day = now
        self._refresh_value_metrics()

        logger.info(
            "risk_gate.initialized",
            portfolio_value=str(portfolio_value),
            max_position_size_pct=self.limits.max_position_size_pct,
            max_daily_loss_pct=self.limits.max_daily_loss_pct,
            max_drawdown_pct=self.limits.max_drawdown_pct,
        )

    def update_portfolio_value(self, value: Decimal, now: Optional[datetime] = None):
        """Track peak and start-of-day value; reset the day on a UTC date change."""
        now = now or datetime.utcnow()

        if self.last_reset_day is None or now.date() != self.last_reset_day.date():
            self.day_start_value = value
            self.last_reset_day = now
            logger.info("risk_gate.daily_reset", new_value=str(value))

        if self.peak_value is None or value > self.peak_value:
            self.peak_value = value

        self.portfolio_value = value
        self._refresh_value_metrics()

    def _refresh_value_metrics(self):
        peak = self.peak_value or Decimal("0")
        start = self.day_start_value or Decimal("0")
        value = self.portfolio_value

        self.metrics.current_drawdown = float((peak - value) / peak) if peak > 0 else 0.0
        self.metrics.daily_pnl = value - start if start > 0 else Decimal("0")
        self.metrics.daily_pnl_pct = float(self.metrics.daily_pnl / start) if start > 0 else 0.0
        self.metrics.updated_at = datetime.utcnow()

    # =========================================================================
    # Trade Validation
    # =========================================================================

    def validate(self, candidate: TradeCandidate) -> RiskCheck:
        """
        Validate a candidate trade against all risk rules.

        Rules are evaluated in priority order; the first failure is returned
        and later rules are skipped.

        Args:
            candidate: Token, position value and originating signal

        Returns:
            RiskCheck indicating if the trade can be executed
        """
        for rule in self._risk_rules:
            try:
                result = rule.check_fn(candidate)
            except Exception as e:
                logger.error(
                    "risk_gate.rule_error",
                    rule=rule.name,
                    error=str(e),
                    token=candidate.token
                )
                # On rule error, be conservative and block
                return RiskCheck(
                    passed=False,
                    reason=f"Risk rule '{rule.name}' encountered an error",
                    risk_level="critical",
                    rule_triggered=rule.name
                )

            if not result.passed:
                result.rule_triggered = rule.name
                self._log_trade_rejected(candidate, rule.name, result.reason)
                logger.warning(
                    "risk_gate.trade_rejected",
                    token=candidate.token,
                    rule=rule.name,
                    reason=result.reason,
                    position_value=str(candidate.position_value_usd)
                )
                return result

        logger.info(
            "risk_gate.trade_approved",
            token=candidate.token,
            position_value=str(candidate.position_value_usd)
        )
        return RiskCheck(passed=True, reason=self.PASS_REASON)

    def _check_emergency_stop(self, candidate: TradeCandidate) -> RiskCheck:
        if self.emergency_stop:
            return RiskCheck(
                passed=False,
                reason=f"Emergency stop active: {self.emergency_reason}",
                risk_level="critical"
            )
        return RiskCheck(passed=True)

    def _check_position_size(self, candidate: TradeCandidate) -> RiskCheck:
        if self.portfolio_value <= 0:
            return RiskCheck(
                passed=False,
                reason="Portfolio value unknown, position size cannot be checked",
                risk_level="warning"
            )
        allocation = candidate.position_value_usd / self.portfolio_value
        limit = Decimal(str(self.limits.max_position_size_pct))
        if allocation > limit:
            return RiskCheck(
                passed=False,
                reason=f"Position size {allocation * 100:.2f}% exceeds limit {limit * 100:.2f}%",
                risk_level="warning",
                metadata={"allocation": float(allocation)}
            )
        return RiskCheck(passed=True)

    def _check_daily_loss(self, candidate: TradeCandidate) -> RiskCheck:
        if self.metrics.daily_pnl_pct < -self.limits.max_daily_loss_pct:
            return RiskCheck(
                passed=False,
                reason=f"Daily loss limit exceeded: {self.metrics.daily_pnl_pct * 100:.2f}%",
                risk_level="critical"
            )
        return RiskCheck(passed=True)

    def _check_drawdown(self, candidate: TradeCandidate) -> RiskCheck:
        if self.metrics.current_drawdown > self.limits.max_drawdown_pct:
            return RiskCheck(
                passed=False,
                reason=f"Drawdown limit exceeded: {self.metrics.current_drawdown * 100:.2f}%",
                risk_level="critical"
            )
        return RiskCheck(passed=True)

    def _check_volatility(self, candidate: TradeCandidate) -> RiskCheck:
        if self.metrics.portfolio_volatility > self.limits.max_volatility:
            return RiskCheck(
                passed=False,
                reason=f"Volatility limit exceeded: {self.metrics.portfolio_volatility * 100:.2f}%",
                risk_level="warning"
            )
        return RiskCheck(passed=True)

    def _check_liquidity(self, candidate: TradeCandidate) -> RiskCheck:
        if candidate.position_value_usd < self.limits.min_liquidity_usd:
            return RiskCheck(
                passed=False,
                reason=(
                    f"Position value ${candidate.position_value_usd:.2f} below minimum "
                    f"liquidity ${self.limits.min_liquidity_usd:.2f}"
                ),
                risk_level="normal"
            )
        return RiskCheck(passed=True)

    # =========================================================================
    # Position Sizing Advisor
    # =========================================================================

    def suggest_size(self, signal: Signal, portfolio_value: Decimal) -> Decimal:
        """
        Suggest a position size as a fraction of portfolio value.

        Base fraction scaled by confidence and risk tiers, capped at the
        maximum position size, then capped by the simplified Kelly fraction
        ``(2c - 1) / stop_distance`` when the signal carries a stop-loss.

        Returns:
            Fraction of portfolio value, never negative
        """
        if portfolio_value <= 0:
            return Decimal("0")

        cfg = self.sizing
        confidence = Decimal(str(signal.confidence))
        size = Decimal(str(cfg.base_fraction))

        if signal.confidence > cfg.high_confidence:
            size *= Decimal(str(cfg.high_confidence_multiplier))
        elif signal.confidence > cfg.medium_confidence:
            size *= Decimal(str(cfg.medium_confidence_multiplier))
        elif signal.confidence < cfg.low_confidence:
            size *= Decimal(str(cfg.low_confidence_multiplier))

        if signal.risk_level == RiskTier.LOW:
            size *= Decimal(str(cfg.low_risk_multiplier))
        elif signal.risk_level == RiskTier.HIGH:
            size *= Decimal(str(cfg.high_risk_multiplier))

        size = min(size, Decimal(str(self.limits.max_position_size_pct)))

        stop_distance = signal.stop_distance_pct
        if stop_distance is not None and stop_distance > 0:
            kelly = (2 * confidence - 1) / stop_distance
            size = min(size, kelly)

        size = max(size, Decimal("0"))

        logger.debug(
            "risk_gate.size_suggested",
            token=signal.token,
            confidence=signal.confidence,
            risk_level=signal.risk_level.value,
            fraction=str(size)
        )
        return size

    def calculate_stop_loss(
        self,
        price: Decimal,
        risk_level: RiskTier = RiskTier.MEDIUM,
        action: TradeAction = TradeAction.BUY
    ) -> Decimal:
        """Stop-loss level from the configured percentage, adjusted by risk tier."""
        adjustment = self._risk_adjusted_pct(self.limits.stop_loss_pct, risk_level)
        if action == TradeAction.BUY:
            return price * (Decimal("1") - adjustment)
        return price * (Decimal("1") + adjustment)

    def calculate_take_profit(
        self,
        price: Decimal,
        risk_level: RiskTier = RiskTier.MEDIUM,
        action: TradeAction = TradeAction.BUY
    ) -> Decimal:
        """Take-profit level from the configured percentage, adjusted by risk tier."""
        adjustment = self._risk_adjusted_pct(self.limits.take_profit_pct, risk_level)
        if action == TradeAction.BUY:
            return price * (Decimal("1") + adjustment)
        return price * (Decimal("1") - adjustment)

    @staticmethod
    def _risk_adjusted_pct(pct: float, risk_level: RiskTier) -> Decimal:
        value = Decimal(str(pct))
        if risk_level == RiskTier.LOW:
            return value * Decimal("0.8")
        if risk_level == RiskTier.HIGH:
            return value * Decimal("1.2")
        return value

    # =========================================================================
    # Portfolio Assessment
    # =========================================================================

    async def assess_portfolio(self, snapshot: PortfolioRiskSnapshot) -> RiskMetrics:
        """
        Recompute risk metrics from a portfolio snapshot and raise alerts.

        A metric above its hard limit raises a CRITICAL alert; above its
        warning threshold, a WARNING.

        Returns:
            The refreshed RiskMetrics
        """
        self.update_portfolio_value(snapshot.total_value)

        self.metrics.portfolio_volatility = snapshot.volatility
        self.metrics.var_95 = snapshot.var_95
        self.metrics.var_99 = snapshot.var_99
        self.metrics.max_correlation = snapshot.correlation
        self.metrics.concentration_risk = snapshot.concentration
        self.metrics.liquidity_risk = snapshot.liquidity_risk

        await self._check_drawdown_risk()
        await self._check_daily_loss_risk()
        await self._check_volatility_risk()
        await self._check_correlation_risk()
        await self._check_concentration_risk()
        await self._check_liquidity_risk()

        logger.info(
            "risk_gate.assessment_complete",
            status=self.get_risk_status().value,
            drawdown=self.metrics.current_drawdown,
            daily_pnl_pct=self.metrics.daily_pnl_pct,
            volatility=self.metrics.portfolio_volatility,
            var_95=str(self.metrics.var_95),
        )
        return self.metrics

    async def _check_drawdown_risk(self):
        drawdown = self.metrics.current_drawdown
        if drawdown > self.limits.max_drawdown_pct:
            await self._create_alert(
                AlertLevel.CRITICAL, "Drawdown Limit Exceeded",
                f"Current drawdown: {drawdown * 100:.2f}% exceeds limit: "
                f"{self.limits.max_drawdown_pct * 100:.2f}%"
            )
        elif drawdown > self.thresholds.drawdown:
            await self._create_alert(
                AlertLevel.WARNING, "High Drawdown",
                f"Current drawdown: {drawdown * 100:.2f}% is approaching limit"
            )

    async def _check_daily_loss_risk(self):
        daily = self.metrics.daily_pnl_pct
        if daily < -self.limits.max_daily_loss_pct:
            await self._create_alert(
                AlertLevel.CRITICAL, "Daily Loss Limit Exceeded",
                f"Daily P&L: {daily * 100:.2f}% exceeds limit: "
                f"{-self.limits.max_daily_loss_pct * 100:.2f}%"
            )
        elif daily < -self.thresholds.daily_loss:
            await self._create_alert(
                AlertLevel.WARNING, "High Daily Loss",
                f"Daily P&L: {daily * 100:.2f}% is approaching limit"
            )

    async def _check_volatility_risk(self):
        volatility = self.metrics.portfolio_volatility
        if volatility > self.limits.max_volatility:
            await self._create_alert(
                AlertLevel.CRITICAL, "Volatility Limit Exceeded",
                f"Portfolio volatility: {volatility * 100:.2f}% exceeds limit: "
                f"{self.limits.max_volatility * 100:.2f}%"
            )
        elif volatility > self.thresholds.volatility:
            await self._create_alert(
                AlertLevel.WARNING, "High Volatility",
                f"Portfolio volatility: {volatility * 100:.2f}% is approaching limit"
            )

    async def _check_correlation_risk(self):
        correlation = self.metrics.max_correlation
        if correlation > self.limits.max_correlation:
            await self._create_alert(
                AlertLevel.WARNING, "High Correlation Risk",
                f"Maximum correlation: {correlation * 100:.2f}% exceeds limit: "
                f"{self.limits.max_correlation * 100:.2f}%"
            )

    async def _check_concentration_risk(self):
        concentration = self.metrics.concentration_risk
        if concentration > self.limits.max_concentration:
            await self._create_alert(
                AlertLevel.CRITICAL, "Concentration Limit Exceeded",
                f"Largest position: {concentration * 100:.2f}% exceeds limit: "
                f"{self.limits.max_concentration * 100:.2f}%"
            )
        elif concentration > self.thresholds.concentration:
            await self._create_alert(
                AlertLevel.WARNING, "High Concentration",
                f"Largest position: {concentration * 100:.2f}% is approaching limit"
            )

    async def _check_liquidity_risk(self):
        liquidity = self.metrics.liquidity_risk
        if liquidity > self.thresholds.liquidity:
            await self._create_alert(
                AlertLevel.WARNING, "Liquidity Risk",
                f"Liquidity risk: {liquidity * 100:.2f}% - some positions may be illiquid"
            )

    # =========================================================================
    # Alerts
    # =========================================================================

    async def _create_alert(self, level: AlertLevel, alert_type: str, message: str) -> Alert:
        alert = Alert(level=level, type=alert_type, message=message)
        self.alerts.append(alert)

        # Bounded window, oldest dropped first
        if len(self.alerts) > self.thresholds.alert_window:
            self.alerts = self.alerts[-self.thresholds.alert_window:]

        if level == AlertLevel.CRITICAL:
            logger.critical("risk_gate.alert", alert_id=alert.id, type=alert_type, message=message)
            await self._notify(alert)
        else:
            logger.warning("risk_gate.alert", alert_id=alert.id, type=alert_type, message=message)
        return alert

    async def _notify(self, alert: Alert):
        if self.notifier is None:
            return
        try:
            await self.notifier(alert)
        except Exception as e:
            logger.error("risk_gate.notification_failed", alert_id=alert.id, error=str(e))

    def get_risk_status(self) -> RiskStatus:
        """CRITICAL if any unacknowledged CRITICAL alert, else WARNING, else NORMAL."""
        pending = [a for a in self.alerts if not a.acknowledged]
        if any(a.level == AlertLevel.CRITICAL for a in pending):
            return RiskStatus.CRITICAL
        if any(a.level == AlertLevel.WARNING for a in pending):
            return RiskStatus.WARNING
        return RiskStatus.NORMAL

    def acknowledge_alert(self, alert_id: str) -> bool:
        """Mark an alert as acknowledged. Returns False if it is unknown."""
        for alert in self.alerts:
            if alert.id == alert_id:
                alert.acknowledged = True
                logger.info("risk_gate.alert_acknowledged", alert_id=alert_id)
                return True
        return False

    def get_alerts(self, limit: int = 50, unacknowledged_only: bool = True) -> List[Alert]:
        """Most recent alerts, newest first."""
        alerts = [a for a in self.alerts if not (unacknowledged_only and a.acknowledged)]
        return list(reversed(alerts[-limit:]))

    def clear_old_alerts(self, max_age: Optional[timedelta] = None) -> int:
        """Drop alerts older than ``max_age``; returns how many were removed."""
        max_age = max_age or timedelta(hours=self.thresholds.alert_max_age_hours)
        cutoff = datetime.utcnow() - max_age
        before = len(self.alerts)
        self.alerts = [a for a in self.alerts if a.timestamp >= cutoff]
        removed = before - len(self.alerts)
        if removed:
            logger.info("risk_gate.alerts_cleared", removed=removed)
        return removed

    # =========================================================================
    # Limits & Emergency Stop
    # =========================================================================

    def update_limits(self, **changes) -> RiskLimitsConfig:
        """
        Replace risk limits with validated new values.

        Raises:
            ConfigurationError: On unknown fields or invalid values
        """
        unknown = set(changes) - set(RiskLimitsConfig.model_fields)
        if unknown:
            raise ConfigurationError(f"Unknown risk limit(s): {', '.join(sorted(unknown))}")

        merged = {**self.limits.model_dump(), **changes}
        self.limits = load_risk_limits(**merged)

        logger.info("risk_gate.limits_updated", changes={k: str(v) for k, v in changes.items()})
        return self.limits

    async def trigger_emergency_stop(self, reason: str):
        """
        Trigger emergency stop - every trade is rejected until reset.

        Args:
            reason: Explanation for why emergency stop was triggered
        """
        if self.emergency_stop:
            return

        self.emergency_stop = True
        self.emergency_reason = reason
        self.emergency_triggered_at = datetime.utcnow()

        logger.critical(
            "risk_gate.emergency_stop_triggered",
            reason=reason,
            triggered_at=self.emergency_triggered_at.isoformat(),
            drawdown=self.metrics.current_drawdown,
            daily_pnl=str(self.metrics.daily_pnl),
        )
        await self._create_alert(
            AlertLevel.CRITICAL, "Emergency Stop", f"Emergency stop triggered: {reason}"
        )

    def reset_emergency_stop(self, authorized_by: Optional[str] = None) -> bool:
        """
        Manually reset emergency stop.

        Returns:
            True if an active stop was reset
        """
        if not self.emergency_stop:
            return False

        logger.warning(
            "risk_gate.emergency_stop_reset",
            was_triggered_at=self.emergency_triggered_at.isoformat() if self.emergency_triggered_at else None,
            authorized_by=authorized_by,
        )
        self.emergency_stop = False
        self.emergency_reason = None
        self.emergency_triggered_at = None
        return True

    # =========================================================================
    # Reporting
    # =========================================================================

    def get_risk_assessment(self) -> Dict[str, Any]:
        """Risk metrics, limits and alert state."""
        return {
            "status": self.get_risk_status().value,
            "metrics": self.metrics.model_dump(mode="json"),
            "limits": self.limits.model_dump(mode="json"),
            "portfolio_value": str(self.portfolio_value),
            "peak_value": str(self.peak_value) if self.peak_value is not None else None,
            "alerts_count": len([a for a in self.alerts if not a.acknowledged]),
            "emergency_stop": {
                "active": self.emergency_stop,
                "reason": self.emergency_reason,
            },
            "rejected_trades": len(self.rejected_trades),
        }

    def _log_trade_rejected(self, candidate: TradeCandidate, rule: str, reason: str):
        self.rejected_trades.append({
            "timestamp": datetime.utcnow().isoformat(),
            "token": candidate.token,
            "position_value": str(candidate.position_value_usd),
            "rule_triggered": rule,
            "reason": reason,
        })
        if len(self.rejected_trades) > self.MAX_REJECTION_LOG:
            self.rejected_trades = self.rejected_trades[-self.MAX_REJECTION_LOG:]

