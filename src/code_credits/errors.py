"""
Typed error taxonomy for the credit and subscription engine.

Business-rule violations subclass ``ValueError`` so callers that only care
about "the request was invalid" can keep catching that.
"""

from __future__ import annotations

import math
from typing import Any, ClassVar, Iterable


class CreditManagementError(Exception):
    code: ClassVar[str] = "CREDIT_MANAGEMENT_ERROR"
    http_status: ClassVar[int] = 400

    def __init__(self, message: str, **details: Any) -> None:
        super().__init__(message)
        self.message = message
        self.details = details

    def to_payload(self) -> dict[str, Any]:
        return {
            "success": False,
            "error": self.code,
            "message": self.message,
            **self.details,
        }


# Not found


class NotFound(CreditManagementError, LookupError):
    code = "NOT_FOUND"
    http_status = 404


class UserNotFound(NotFound):
    code = "USER_NOT_FOUND"

    def __init__(self, user_id: str) -> None:
        super().__init__(f"User {user_id} not found", user_id=user_id)


class SubscriptionNotFound(NotFound):
    code = "SUBSCRIPTION_NOT_FOUND"


class PromotionNotFound(NotFound):
    code = "PROMOTION_NOT_FOUND"

    def __init__(self, promotion_id: str) -> None:
        super().__init__(
            f"Promotion {promotion_id} not found", promotion_id=promotion_id
        )


class PlanNotFound(NotFound):
    code = "PLAN_NOT_FOUND"

    def __init__(self, plan_id: str, available: Iterable[str] = ()) -> None:
        super().__init__(
            f"Plan {plan_id!r} does not exist",
            plan_id=plan_id,
            available_plans=list(available),
        )


# User-correctable shortfalls


class InsufficientBalance(CreditManagementError, ValueError):
    code = "INSUFFICIENT_BALANCE"
    http_status = 402

    def __init__(self, required_in_paisa: int, available_in_paisa: int) -> None:
        shortfall = max(required_in_paisa - available_in_paisa, 0)
        super().__init__(
            f"Insufficient wallet balance: {shortfall} paisa more is needed",
            required_in_paisa=required_in_paisa,
            available_in_paisa=available_in_paisa,
            shortfall_in_paisa=shortfall,
        )


class InsufficientCredits(CreditManagementError, ValueError):
    code = "INSUFFICIENT_CREDITS"
    http_status = 402


# Subscription state machine


class InvalidTransition(CreditManagementError, ValueError):
    code = "INVALID_TRANSITION"


class InvalidDirection(InvalidTransition):
    code = "INVALID_DIRECTION"

    def __init__(
        self,
        current_plan: str,
        requested_plan: str,
        valid_alternatives: Iterable[str],
        action: str,
    ) -> None:
        alternatives = list(valid_alternatives)
        super().__init__(
            f"Cannot {action} from {current_plan} to {requested_plan}",
            current_plan=current_plan,
            requested_plan=requested_plan,
            valid_alternatives=alternatives,
        )


class SamePlan(InvalidTransition):
    code = "SAME_PLAN"

    def __init__(self, plan_id: str) -> None:
        super().__init__(f"Already subscribed to {plan_id}", current_plan=plan_id)


class ScheduleConflict(InvalidTransition):
    code = "SCHEDULE_CONFLICT"
    http_status = 409

    def __init__(self, scheduled_plan: str, starts_at: str) -> None:
        super().__init__(
            "A scheduled plan change already exists; cancel it before scheduling another",
            scheduled_plan=scheduled_plan,
            scheduled_start=starts_at,
            valid_alternatives=["cancel_scheduled_upgrade"],
        )


class CannotCancelFree(InvalidTransition):
    code = "CANNOT_CANCEL_FREE"

    def __init__(self) -> None:
        super().__init__("The free plan cannot be cancelled")


class DowngradeNotAllowed(InvalidTransition):
    code = "DOWNGRADE_NOT_ALLOWED"


class CancellationWindowError(CreditManagementError, ValueError):
    code = "CANCELLATION_WINDOW"
    http_status = 403

    def __init__(self, window_hours: int, hours_elapsed: float) -> None:
        remaining = math.ceil(window_hours - hours_elapsed)
        super().__init__(
            f"Subscription cannot be cancelled within {window_hours} hours of purchase",
            remaining_hours=remaining,
        )
        self.remaining_hours = remaining


# Flow control


class NoCreditsAvailable(CreditManagementError):
    code = "NO_CREDITS_AVAILABLE"
    http_status = 403


class InvalidInput(CreditManagementError, ValueError):
    code = "INVALID_INPUT"


# Infrastructure


class PersistenceFailure(CreditManagementError):
    code = "PERSISTENCE_FAILURE"
    http_status = 500

    def to_payload(self) -> dict[str, Any]:
        return {
            "success": False,
            "error": "INTERNAL_ERROR",
            "message": "The request could not be completed",
        }
