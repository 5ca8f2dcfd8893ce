"""Business-rule errors raised by crud and mapped to HTTP responses by the routers."""
from typing import Optional


class GroupPurchaseError(ValueError):
    code = "group_purchase_error"
    status_code = 400
    message = "Group purchase request could not be completed"
    remediation: Optional[str] = None

    def __init__(self, message: Optional[str] = None):
        super().__init__(self.code)
        if message:
            self.message = message

    def to_detail(self) -> dict:
        detail = {"error": self.code, "message": self.message}
        if self.remediation:
            detail["remediation"] = self.remediation
        return detail


class ProductNotFound(GroupPurchaseError):
    code = "product_not_found"
    status_code = 404
    message = "Product not found"


class GroupPurchaseNotFound(GroupPurchaseError):
    code = "group_purchase_not_found"
    status_code = 404
    message = "Group purchase not found"


class AlreadyParticipating(GroupPurchaseError):
    code = "already_participating"
    status_code = 409
    message = "You have already joined this group purchase"


class NotParticipating(GroupPurchaseError):
    code = "not_participating"
    status_code = 409
    message = "You are not participating in this group purchase"


class GroupFull(GroupPurchaseError):
    code = "group_full"
    status_code = 409
    message = "This group purchase has reached its maximum number of participants"


class GroupClosed(GroupPurchaseError):
    code = "group_closed"
    status_code = 409
    message = "This group purchase has ended"


class ProfileIncomplete(GroupPurchaseError):
    code = "profile_incomplete"
    status_code = 400
    message = "Please add your delivery address before joining a group purchase"
    remediation = "/addresses"


class InvalidDiscountTiers(GroupPurchaseError):
    code = "invalid_discount_tiers"
    status_code = 400
    message = "Discount tiers must have distinct thresholds and prices below the original price"
