"""
Outcomes of the voting-credential lifecycle.

Every guard failure is a VotingError subclass carrying a short machine code,
the HTTP status the web layer answers with and a message safe to show to
voters and staff.
"""


class VotingError(Exception):
    code = 'error'
    status_code = 400
    message = 'Request could not be completed'

    def __init__(self, message=None, **details):
        super().__init__(message or self.message)
        self.message = message or self.message
        self.details = details

    def to_dict(self):
        payload = {'success': False, 'error': self.code, 'message': self.message}
        if self.details:
            payload['details'] = self.details
        return payload


class InvalidRequest(VotingError):
    code = 'invalid_request'
    message = 'Missing or invalid request data'


class NotFound(VotingError):
    code = 'not_found'
    status_code = 404
    message = 'Voting credential not found'


class FormatUnrecognized(NotFound):
    """Scanned text matched none of the known credential formats."""
    code = 'format_unrecognized'
    status_code = 400
    message = 'Scanned code is not a recognised voting credential'


class AlreadyValidated(VotingError):
    code = 'already_validated'
    status_code = 409
    message = 'Credential has already been validated'


class AlreadyUsed(VotingError):
    code = 'already_used'
    status_code = 409
    message = 'Credential has already been used to vote'


class AlreadyVoted(VotingError):
    code = 'already_voted'
    message = 'You have already voted'


class Expired(VotingError):
    code = 'expired'
    message = 'Credential has expired, ask the voter to generate a new code'


class CandidateNotFound(VotingError):
    code = 'candidate_not_found'
    status_code = 404
    message = 'Candidate not found'


class CandidateInactive(CandidateNotFound):
    code = 'candidate_inactive'
    message = 'Candidate is not active'


class NoValidSession(VotingError):
    code = 'no_valid_session'
    message = 'No validated voting credential found. Please get your QR code validated first.'


class Unauthorized(VotingError):
    code = 'unauthorized'
    status_code = 401
    message = 'Not authenticated'


class Forbidden(VotingError):
    code = 'forbidden'
    status_code = 403
    message = 'You are not allowed to perform this action'


class StorageFailure(VotingError):
    code = 'storage_failure'
    status_code = 500
    message = 'Internal server error'
