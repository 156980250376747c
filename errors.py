class SettlementError(Exception):
    """base class for everything the settlement path raises on purpose."""


class VerificationError(SettlementError):
    """signature check failed or the body could not be parsed."""


class InvalidEventError(SettlementError, ValueError):
    """event is authentic but missing fields we need (integration bug upstream)."""


class NotFoundError(SettlementError, ValueError):
    pass


class UserNotFoundError(NotFoundError):
    def __init__(self, user_id: str):
        super().__init__(f"User {user_id} not found")
        self.user_id = user_id


class BusinessNotFoundError(NotFoundError):
    def __init__(self, business_id: str):
        super().__init__(f"Business {business_id} not found")
        self.business_id = business_id


class DuplicatePaymentError(SettlementError):
    """
    raised by the ledger when a transaction with this payment id already exists.
    the engine turns this into an 'already_processed' result.
    """

    def __init__(self, payment_id: str):
        super().__init__(f"Payment {payment_id} already settled")
        self.payment_id = payment_id
