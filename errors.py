class LedgerError(ValueError):
    """Base class for domain errors raised by the services."""


class InvalidInput(LedgerError):
    pass


class InvalidBudget(InvalidInput):
    pass


class InvalidCategory(InvalidInput):
    pass


class DuplicateEmail(InvalidInput):
    pass


class NotFound(LedgerError):
    pass


class DuplicateCategory(LedgerError):
    pass


class BudgetExceeded(LedgerError):
    pass


class BudgetBelowCurrentSpend(LedgerError):
    pass


class CategoryInUse(LedgerError):
    pass


class Unauthenticated(LedgerError):
    pass


class ReportGenerationError(LedgerError):
    pass
