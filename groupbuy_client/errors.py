"""Client-side view of the group purchase error taxonomy.

Every error carries copy that can be shown to the shopper as-is
(``user_message``) and, where there is one, the place to fix it
(``remediation``).
"""
from typing import Any, Dict, Optional


class GroupBuyError(Exception):
    code = "group_buy_error"
    user_message = "Something went wrong. Please try again."
    remediation: Optional[str] = None

    def __init__(self, message: Optional[str] = None, status_code: Optional[int] = None, detail: Any = None):
        super().__init__(message or self.user_message)
        if message:
            self.user_message = message
        self.status_code = status_code
        self.detail = detail


class GroupPurchaseNotFound(GroupBuyError):
    code = "group_purchase_not_found"
    user_message = "This group purchase no longer exists."


class ProductNotFound(GroupBuyError):
    code = "product_not_found"
    user_message = "This product no longer exists."


class AlreadyParticipating(GroupBuyError):
    code = "already_participating"
    user_message = "You have already joined this group purchase."


class NotParticipating(GroupBuyError):
    code = "not_participating"
    user_message = "You are not part of this group purchase."


class GroupFull(GroupBuyError):
    code = "group_full"
    user_message = "This group purchase is full."


class GroupClosed(GroupBuyError):
    code = "group_closed"
    user_message = "This group purchase has ended."


class ProfileIncomplete(GroupBuyError):
    code = "profile_incomplete"
    user_message = "Please add your delivery address before joining a group purchase."
    remediation = "/addresses"


class InvalidDiscountTiers(GroupBuyError):
    code = "invalid_discount_tiers"
    user_message = "Discount tiers are not valid for this product."


class AuthenticationRequired(GroupBuyError):
    code = "authentication_required"
    user_message = "Please sign in to continue."


class PermissionDenied(GroupBuyError):
    code = "permission_denied"
    user_message = "You do not have permission to do that."


class ServiceError(GroupBuyError):
    """5xx or network failure after the allowed retries."""

    code = "service_unavailable"
    user_message = "The service is temporarily unavailable. Please try again shortly."


BY_CODE: Dict[str, type] = {
    cls.code: cls
    for cls in (
        GroupPurchaseNotFound,
        ProductNotFound,
        AlreadyParticipating,
        NotParticipating,
        GroupFull,
        GroupClosed,
        ProfileIncomplete,
        InvalidDiscountTiers,
    )
}


def error_from_response(status_code: int, body: Any) -> GroupBuyError:
    """Map an HTTP error body (``{"detail": {"error": ...}}``) to a typed error."""
    detail = body.get("detail") if isinstance(body, dict) else None

    if isinstance(detail, dict):
        cls = BY_CODE.get(detail.get("error"))
        if cls is not None:
            err = cls(status_code=status_code, detail=detail)
            if detail.get("remediation"):
                err.remediation = detail["remediation"]
            return err

    message = detail if isinstance(detail, str) else None
    if status_code == 401:
        return AuthenticationRequired(status_code=status_code, detail=detail)
    if status_code == 403:
        return PermissionDenied(message, status_code=status_code, detail=detail)
    if status_code >= 500:
        return ServiceError(status_code=status_code, detail=detail)
    return GroupBuyError(message, status_code=status_code, detail=detail)
