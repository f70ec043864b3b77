class AssignmentError(Exception):
    """Base class of every error surfaced to an interactive caller."""

    status_code = 400

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class ValidationError(AssignmentError):
    status_code = 422


class AuthorizationError(AssignmentError):
    status_code = 403


class NotAssigned(AuthorizationError):
    def __init__(self, recipient_id: str, assignment_id: str):
        super().__init__(f"Recipient {recipient_id} is not assigned to {assignment_id}")
        self.recipient_id = recipient_id
        self.assignment_id = assignment_id


class NotFoundError(AssignmentError):
    status_code = 404


class StateConflict(AssignmentError):
    status_code = 409


class SubmissionClosed(StateConflict):
    def __init__(self, assignment_id: str, close_date):
        super().__init__(f"Submissions for {assignment_id} closed at {close_date.isoformat()}")
        self.assignment_id = assignment_id
        self.close_date = close_date


class ConcurrentModification(StateConflict):
    def __init__(self, assignment_id: str):
        super().__init__(f"Assignment {assignment_id} was modified concurrently, retry the request")
        self.assignment_id = assignment_id


class PublicationError(AssignmentError):
    """Scheduler-side failure; stored on the assignment, never returned to a caller."""

    status_code = 500
