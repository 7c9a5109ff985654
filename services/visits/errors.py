"""Domain exceptions raised by the visit engine."""


class VisitsError(Exception):
    """Base class for visit engine errors."""


class TripNotFoundError(VisitsError):
    """Trip does not exist or is not owned by the requesting user."""

    def __init__(self, trip_id: str, user_id: str):
        super().__init__(f"Trip {trip_id} not found for user {user_id}")
        self.trip_id = trip_id
        self.user_id = user_id


class BackfillCancelled(VisitsError):
    """The caller abandoned a running backfill analysis."""


class ChunkQueryError(VisitsError):
    """A backfill place-chunk query failed after all retries."""

    def __init__(self, chunk_index: int, place_ids: list[str], cause: BaseException):
        super().__init__(f"Chunk {chunk_index} ({len(place_ids)} places) failed: {cause}")
        self.chunk_index = chunk_index
        self.place_ids = place_ids
        self.cause = cause


class PlaceNotFoundError(VisitsError):
    """Place does not exist or does not belong to one of the user's trips."""

    def __init__(self, place_id: str, user_id: str):
        super().__init__(f"Place {place_id} not found for user {user_id}")
        self.place_id = place_id
        self.user_id = user_id
