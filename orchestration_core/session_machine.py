"""
充电会话状态机：双方确认握手、确认超时策略。

函数只读写会话对象上的字段（status / admin_confirmed_at / user_confirmed_at /
created_at / timeout_warnings），持久化由服务层负责。
"""
from __future__ import annotations
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import List, Optional

from .errors import InvalidStateTransition, ValidationError
from .models import Party, SessionStatus

S = SessionStatus

CONFIRMATION_STATES = (
    S.WAITING_CONFIRMATIONS.value,
    S.ADMIN_CONFIRMED.value,
    S.USER_CONFIRMED.value,
)

ALLOWED_FROM = {
    "confirm": CONFIRMATION_STATES,
    "start": (S.READY_TO_START.value,),
    "stop": (S.CHARGING.value,),
    "cancel": CONFIRMATION_STATES + (S.READY_TO_START.value, S.CHARGING.value),
}

TIMEOUT_REASON = "confirmation timeout"

WARNING_CANCEL_AVAILABLE = "5min_no_confirmation"
WARNING_IMMINENT = "10min_warning"
WARNING_AUTO_CANCEL = "15min_auto_cancel"


@dataclass
class TimeoutPolicy:
    cancel_available_minutes: float = 5
    warning_minutes: float = 10
    auto_cancel_minutes: float = 15

    @classmethod
    def from_config(cls, cfg: dict) -> "TimeoutPolicy":
        return cls(
            cancel_available_minutes=cfg.get("cancel_available_minutes", 5),
            warning_minutes=cfg.get("timeout_warning_minutes", 10),
            auto_cancel_minutes=cfg.get("auto_cancel_minutes", 15),
        )


def _status(session) -> str:
    status = session.status
    return status.value if isinstance(status, SessionStatus) else status


def parse_party(value: Optional[str], allow_system: bool = False) -> Party:
    allowed = [Party.ADMIN, Party.USER] + ([Party.SYSTEM] if allow_system else [])
    try:
        party = Party((value or "").strip().lower())
    except ValueError:
        party = None
    if party not in allowed:
        raise ValidationError("unknown party",
                              {"user_type": "must be one of " + ", ".join(p.value for p in allowed)})
    return party


def ensure_allowed(session, action: str) -> None:
    status = _status(session)
    if status not in ALLOWED_FROM[action]:
        raise InvalidStateTransition(f"cannot {action} a session in status '{status}'", status)


def has_confirmed(session, party: Party) -> bool:
    if party == Party.ADMIN:
        return session.admin_confirmed_at is not None
    return session.user_confirmed_at is not None


def confirm(session, party: Party, now: datetime) -> bool:
    """
    记录一方的确认。重复确认不报错也不修改时间戳，返回 False；
    双方都确认后进入 ready_to_start。
    """
    if has_confirmed(session, party):
        return False
    ensure_allowed(session, "confirm")
    if party == Party.ADMIN:
        session.admin_confirmed_at = now
    else:
        session.user_confirmed_at = now

    if session.admin_confirmed_at is not None and session.user_confirmed_at is not None:
        session.status = S.READY_TO_START.value
    elif session.admin_confirmed_at is not None:
        session.status = S.ADMIN_CONFIRMED.value
    else:
        session.status = S.USER_CONFIRMED.value
    return True


# ------------- 超时 --------------------------------------------------
def elapsed_minutes(session, now: datetime) -> float:
    return max((now - session.created_at).total_seconds() / 60, 0.0)


def awaiting_confirmations(session) -> bool:
    return _status(session) in CONFIRMATION_STATES


def timeout_state(session, policy: TimeoutPolicy, now: datetime) -> dict:
    waiting = awaiting_confirmations(session)
    elapsed = elapsed_minutes(session, now)
    deadline = session.created_at + timedelta(minutes=policy.auto_cancel_minutes)
    return {
        "awaiting_confirmations": waiting,
        "elapsed_minutes": round(elapsed, 2),
        "cancel_available": waiting and elapsed >= policy.cancel_available_minutes,
        "warning": waiting and elapsed >= policy.warning_minutes,
        "auto_cancel_at": deadline.isoformat() if waiting else None,
        "auto_cancel_due": waiting and elapsed >= policy.auto_cancel_minutes,
    }


def due_warnings(session, policy: TimeoutPolicy, now: datetime) -> List[str]:
    """尚未记录、但已到达阈值的超时提示"""
    if not awaiting_confirmations(session):
        return []
    elapsed = elapsed_minutes(session, now)
    recorded = {w.get("warning_type") for w in (session.timeout_warnings or [])}
    due = []
    for warning_type, threshold in (
        (WARNING_CANCEL_AVAILABLE, policy.cancel_available_minutes),
        (WARNING_IMMINENT, policy.warning_minutes),
        (WARNING_AUTO_CANCEL, policy.auto_cancel_minutes),
    ):
        if elapsed >= threshold and warning_type not in recorded:
            due.append(warning_type)
    return due


def can_cancel(session, party: Party, policy: TimeoutPolicy, now: datetime) -> bool:
    """
    确认阶段：未确认的一方随时可以取消；已确认的一方要等到
    cancel_available_minutes 之后。ready_to_start / charging 任一方都可以取消。
    """
    status = _status(session)
    if status not in ALLOWED_FROM["cancel"]:
        return False
    if party == Party.SYSTEM or status not in CONFIRMATION_STATES:
        return True
    if not has_confirmed(session, party):
        return True
    return elapsed_minutes(session, now) >= policy.cancel_available_minutes


def available_actions(session, party: Party, policy: TimeoutPolicy, now: datetime) -> List[str]:
    status = _status(session)
    actions = []
    if status in CONFIRMATION_STATES and not has_confirmed(session, party):
        actions.append("confirm")
    if status == S.READY_TO_START.value:
        actions.append("start")
    if status == S.CHARGING.value:
        actions.append("stop")
    if can_cancel(session, party, policy, now):
        actions.append("cancel")
    return actions
