class GuildError(Exception):
    pass


class NotFoundError(GuildError):
    pass


class OrderNotFoundError(NotFoundError):
    pass


class ClaimNotFoundError(NotFoundError):
    pass


class RewardNotFoundError(NotFoundError):
    pass


class PurchaseNotFoundError(NotFoundError):
    pass


class StudentNotFoundError(NotFoundError):
    pass


class InvalidInputError(GuildError):
    pass


class InsufficientBalanceError(GuildError):
    pass


class CapacityExceededError(GuildError):
    pass


class AlreadyProcessedError(GuildError):
    pass


class InvalidStateTransitionError(GuildError):
    pass


class StoreUnavailableError(GuildError):
    """Transient store failure; the whole action may be retried."""


class NotPrivilegedError(GuildError):
    pass


class DuplicateRowError(GuildError):
    pass


class MultipleRowsError(GuildError):
    pass
