"""
Error types shared by the listing, challenge and profile layers.

Every error carries a ``retryable`` flag so callers can decide whether to
back off and try again without inspecting the concrete class.
"""


class FoodLoopError(Exception):
    retryable = False


class ValidationError(FoodLoopError, ValueError):
    """Missing or malformed input, rejected before any I/O."""


class StoreError(FoodLoopError):
    retryable = True


class StoreUnavailable(StoreError):
    """The document store could not be reached."""


class StoreQueryError(StoreError):
    """The document store rejected or failed a read/write."""


class IndexRequired(StoreQueryError):
    """A query combined a filter with ordering that needs a composite index."""


class DocumentNotFound(StoreQueryError):
    retryable = False

    def __init__(self, collection: str, doc_id: str):
        super().__init__(f"{collection}/{doc_id} does not exist")
        self.collection = collection
        self.doc_id = doc_id


class WriteConflict(StoreQueryError):
    """A conditional update found the document changed since it was read."""

    def __init__(self, collection: str, doc_id: str):
        super().__init__(f"{collection}/{doc_id} changed concurrently")
        self.collection = collection
        self.doc_id = doc_id


class ChallengeNotFound(FoodLoopError, LookupError):
    def __init__(self, challenge_type: str):
        super().__init__(f"no challenge defined for type '{challenge_type}'")
        self.challenge_type = challenge_type


class BadgeActivationInconsistency(FoodLoopError):
    """Progress reached its goal remotely but the badge was not activated.

    Repaired by ``ChallengeEngine.repair`` on the next profile load.
    """

    retryable = True

    def __init__(self, user_id: str, challenge_type: str, cause: Exception):
        super().__init__(f"badge for '{challenge_type}' not activated for user {user_id}: {cause}")
        self.user_id = user_id
        self.challenge_type = challenge_type
        self.cause = cause
