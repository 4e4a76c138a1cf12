"""Error types raised by the ledger and tournament lifecycle.

Routes catch :class:`ArenaError`, flash ``str(exc)`` to the user and write an
audit row.  ``category`` is what ends up in the flash message category.
"""


class ArenaError(Exception):
    message = 'Something went wrong.'
    category = 'error'

    def __init__(self, message=None):
        super().__init__(message or self.message)


class ValidationError(ArenaError):
    message = 'Invalid input.'


class AuthorizationError(ArenaError):
    message = 'You are not allowed to do that.'


class StateError(ArenaError):
    message = 'That action is not possible right now.'


class TransportError(ArenaError):
    message = 'Could not save changes. Please try again.'


class TournamentNotFound(StateError):
    message = 'Tournament not found.'


class TournamentNotOpen(StateError):
    message = 'You can only join upcoming tournaments.'


class AlreadyJoined(StateError):
    message = 'You have already joined this tournament.'
    category = 'info'


class TournamentFull(StateError):
    message = 'This tournament is full.'


class InsufficientBalance(StateError):
    message = 'Insufficient balance.'


class InvalidTransition(StateError):
    message = 'Invalid status change.'


class PrizesAlreadyDistributed(StateError):
    message = 'Prizes have already been distributed for this tournament.'
    category = 'info'


class RequestAlreadyProcessed(StateError):
    message = 'Request already processed.'
    category = 'info'
