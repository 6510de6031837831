"""
Kill switch with latching emergency stop.

Once triggered, trading cannot auto-resume - manual acknowledgment required.
The Risk Validator blocks every buy while the switch is active.
"""
import json
import os
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Optional

from tradeguard.exceptions import InvariantError, OperationalError
from tradeguard.monitoring.logger import get_logger

logger = get_logger(__name__)


def default_state_path() -> Optional[Path]:
    """KILL_SWITCH_STATE_PATH env, or None (persistence disabled)."""
    env_path = os.environ.get("KILL_SWITCH_STATE_PATH")
    return Path(env_path) if env_path else None


class KillSwitchReason(str, Enum):
    MANUAL = "manual"
    API_ERROR = "api_error"
    DAILY_LOSS_LIMIT = "daily_loss_limit"
    DATA_FAILURE = "data_failure"
    RECONCILIATION_FAILURE = "reconciliation_failure"


class KillSwitch:
    """
    Latched emergency kill switch.

    Once activated it stays active until acknowledge() is called. State is
    persisted as JSON so a restart cannot silently resume trading.
    """

    def __init__(self, broker=None, state_path: Optional[Path] = None):
        self.active = False
        self.latched = False
        self.reason: Optional[KillSwitchReason] = None
        self.message: Optional[str] = None
        self.activated_at: Optional[datetime] = None
        self.broker = broker
        self.state_path = Path(state_path) if state_path else None

        self._load_state()
        logger.info("Kill Switch initialized", persisted=self.state_path is not None, active=self.active)

    def activate_sync(self, reason: KillSwitchReason, message: Optional[str] = None) -> None:
        """Latch the switch without touching the broker."""
        if self.active:
            return
        self.active = True
        self.latched = True
        self.reason = reason
        self.message = message
        self.activated_at = datetime.now(timezone.utc)
        self._save_state()

        logger.critical(
            "KILL SWITCH ACTIVATED",
            reason=reason.value,
            message=message,
            timestamp=self.activated_at.isoformat(),
        )
        logger.critical("Manual acknowledgment required to restart trading")

    async def activate(self, reason: KillSwitchReason, message: Optional[str] = None, cancel_orders: bool = True) -> None:
        """
        Latch the switch and, when a broker is attached, cancel open orders.

        Positions are never flattened here; exits stay with the position
        manager so stop-loss handling keeps working.
        """
        if self.active:
            return
        self.activate_sync(reason, message)

        if not cancel_orders:
            return
        if self.broker is None:
            logger.critical("Kill switch: No broker attached, cannot cancel open orders")
            return

        try:
            open_orders = await self.broker.list_open_orders()
        except OperationalError as e:
            logger.critical("Kill switch: Failed to list open orders", error=str(e), error_type=type(e).__name__)
            return

        cancelled = 0
        for order in open_orders:
            try:
                await self.broker.cancel_order(order.id)
                cancelled += 1
            except InvariantError:
                raise
            except OperationalError as e:
                logger.warning(
                    "Kill switch: Failed to cancel order (transient)",
                    order_id=order.id,
                    symbol=order.symbol,
                    error=str(e),
                    error_type=type(e).__name__,
                )
        logger.info("Kill switch: Order cleanup complete", cancelled=cancelled, open_orders=len(open_orders))

    def acknowledge(self) -> bool:
        """
        Manually acknowledge the kill switch to allow restart.

        Returns:
            True if acknowledged successfully
        """
        if not self.latched:
            logger.warning("Kill switch not latched, nothing to acknowledge")
            return False

        logger.info(
            "Kill switch acknowledged",
            reason=self.reason.value if self.reason else "unknown",
            activated_at=self.activated_at.isoformat() if self.activated_at else "unknown",
        )
        self.active = False
        self.latched = False
        self.reason = None
        self.message = None
        self.activated_at = None
        self._save_state()
        return True

    def is_active(self) -> bool:
        return self.active

    def is_latched(self) -> bool:
        return self.latched

    def get_status(self) -> dict:
        return {
            "active": self.active,
            "latched": self.latched,
            "reason": self.reason.value if self.reason else None,
            "message": self.message,
            "activated_at": self.activated_at.isoformat() if self.activated_at else None,
        }

    def _save_state(self) -> None:
        """
        Persist state. Failure to write propagates: an unpersisted kill switch
        could let a restart resume trading.
        """
        if self.state_path is None:
            return
        self.state_path.parent.mkdir(parents=True, exist_ok=True)
        with open(self.state_path, "w") as f:
            json.dump(
                {
                    "active": self.active,
                    "latched": self.latched,
                    "reason": self.reason.value if self.reason else None,
                    "message": self.message,
                    "activated_at": self.activated_at.isoformat() if self.activated_at else None,
                },
                f,
            )

    def _load_state(self) -> None:
        """Load persisted state. A corrupt file defaults to ACTIVE."""
        if self.state_path is None or not self.state_path.exists():
            return

        try:
            with open(self.state_path, "r") as f:
                state = json.load(f)
        except (json.JSONDecodeError, ValueError) as e:
            logger.critical("Kill switch state file corrupt - defaulting to ACTIVE", error=str(e))
            self.active = True
            self.latched = True
            self.reason = KillSwitchReason.DATA_FAILURE
            self.activated_at = datetime.now(timezone.utc)
            return

        self.active = bool(state.get("active", False))
        self.latched = bool(state.get("latched", False))
        self.message = state.get("message")
        reason_str = state.get("reason")
        if reason_str:
            try:
                self.reason = KillSwitchReason(reason_str)
            except ValueError:
                self.reason = None
        activated_at_str = state.get("activated_at")
        if activated_at_str:
            self.activated_at = datetime.fromisoformat(activated_at_str)

        if self.active:
            logger.warning(
                "Kill switch was active on startup",
                reason=self.reason.value if self.reason else None,
                activated_at=activated_at_str,
            )
