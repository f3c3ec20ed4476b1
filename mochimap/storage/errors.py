"""Storage exceptions."""


class StoreError(RuntimeError):
    """A persistence operation failed (connection loss, SQL error, ...)."""


class DuplicateKeyError(StoreError):
    """Insert collided with an existing primary key. Not a failure for replays."""

    def __init__(self, table: str, message: str = ""):
        super().__init__(message or f"Duplicate key in {table}")
        self.table = table
