# core/errors.py
"""
Automation engine exceptions.

Permanent failures end an execution without retry; DeliveryError is the
transient kind that feeds the backoff schedule.
"""


class AutomationError(Exception):
    """Base class for automation engine errors"""


class PermanentDeliveryError(AutomationError):
    """Validation failure that must not be retried (reason stored on the execution)"""

    def __init__(self, reason: str):
        super().__init__(reason)
        self.reason = reason


class DeliveryError(AutomationError):
    """Transient delivery channel failure, eligible for retry"""


class RuleNotFoundError(AutomationError):
    pass


class ContactNotFoundError(AutomationError):
    pass


class TemplateNotFoundError(AutomationError):
    pass


class EmailSettingsMissingError(AutomationError):
    pass
