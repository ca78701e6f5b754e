"""SendFlow Exceptions"""


class SendFlowError(Exception):
    """Base exception for SendFlow"""
    pass


class WorkflowValidationError(SendFlowError):
    """Workflow graph failed validation"""

    def __init__(self, errors, message=None):
        self.errors = list(errors)
        if message is None:
            message = f"Workflow has {len(self.errors)} validation error(s)"
            if self.errors:
                message += f": {self.errors[0].message}"
        super().__init__(message)


class ConfigError(SendFlowError):
    """Invalid A/B test or course cycle configuration"""
    pass


class ExecutionError(SendFlowError):
    """A workflow tick failed"""
    pass


class TransientDeliveryError(ExecutionError):
    """Collaborator timed out or was unreachable; the tick may be retried"""
    pass


class EnrollmentError(SendFlowError):
    """Contact cannot be enrolled"""
    pass


class NotFoundError(SendFlowError):
    """Resource not found"""
    pass
