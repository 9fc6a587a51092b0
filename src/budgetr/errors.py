"""Exception hierarchy for Budgetr."""


class BudgetrError(Exception):
    """Base class for all Budgetr errors."""


class ValidationError(BudgetrError, ValueError):
    """Input rejected before any state was changed."""


class InvalidArgument(ValidationError):
    """A meter name, factor or period failed validation."""


class FactorOutOfRange(InvalidArgument):
    """Meter factor outside the allowed [-10, 10] range."""


class InvalidOperation(BudgetrError):
    """The operation is not allowed in the current ledger or sync state."""


class InvalidImportError(InvalidOperation, ValidationError):
    """An import blob was rejected (no meters, duplicate factors, bad shape)."""


class CorruptSnapshotError(InvalidImportError):
    """A persisted or remote snapshot could not be parsed."""


class AuthenticationRequired(InvalidOperation):
    """The remote backup store has no authenticated session."""


class TransientSyncError(BudgetrError):
    """Network or storage failure while talking to a remote backup store."""
