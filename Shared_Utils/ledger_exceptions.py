from decimal import Decimal


class LedgerError(Exception):
    """Base class for all ledger exceptions."""
    def __init__(self, message="Ledger error", errors=None):
        super().__init__(message)
        self.errors = errors


# Request Errors
class ValidationError(LedgerError):
    """Raised when a request is malformed or breaks a business rule. Nothing is written."""
    def __init__(self, message="Validation failed", errors=None):
        super().__init__(message, errors)


class PermitEntryRequired(ValidationError):
    """Raised when a permit destination is allocated without a permit entry."""
    def __init__(self, message="A permit entry must be selected for this destination", errors=None):
        super().__init__(message, errors)


# Quantity Errors
class InsufficientQuantity(LedgerError):
    """Raised when the candidate entries cannot cover the requested volume."""
    def __init__(self, shortfall, message=None, errors=None):
        self.shortfall = Decimal(str(shortfall))
        super().__init__(message or f"Insufficient quantity: short by {self.shortfall}", errors)


# Conflict Errors
class ConflictError(LedgerError):
    """Raised when the store state no longer permits the operation."""
    def __init__(self, message="Conflicting ledger state", errors=None):
        super().__init__(message, errors)


class DuplicatePreAllocation(ConflictError):
    """Raised when a truck already holds an active pre-allocation for the product."""
    def __init__(self, existing_id, message=None, errors=None):
        self.existing_id = existing_id
        super().__init__(message or f"Truck already has an active pre-allocation ({existing_id})", errors)


class ConcurrentModificationError(ConflictError):
    """Raised when an entry changed between planning and commit."""
    def __init__(self, message="Entry was modified concurrently; retry the operation", errors=None):
        super().__init__(message, errors)


# Lookup Errors
class NotFound(LedgerError):
    """Raised when a referenced record does not exist."""
    def __init__(self, message="Record not found", errors=None):
        super().__init__(message, errors)


class AllocationNotFound(NotFound):
    """Raised when an undo targets an unknown transaction."""
    def __init__(self, transaction_id, message=None, errors=None):
        self.transaction_id = transaction_id
        super().__init__(message or f"No allocation found for transaction {transaction_id}", errors)


class StaleUndo(LedgerError):
    """Raised when an allocation can no longer be undone safely."""
    def __init__(self, message="Allocation can no longer be undone", errors=None):
        super().__init__(message, errors)


# Store Errors
class LedgerIOError(LedgerError):
    """Raised when the backing store fails. The whole batch was rolled back."""
    def __init__(self, message="Ledger store failure", errors=None):
        super().__init__(message, errors)
