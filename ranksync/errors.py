class RankSyncError(Exception):
    """Base class for every failure the rank pipeline reports."""


class IdentityNotFound(RankSyncError):
    def __init__(self, username: str):
        super().__init__(f"Could not find a player identity for {username}")
        self.username = username


class RankNotFound(RankSyncError):
    def __init__(self, rank_name: str):
        super().__init__(f"Rank does not exist: {rank_name}")
        self.rank_name = rank_name


class BackendUnavailable(RankSyncError):
    """Ledger, relay or permission backend I/O failed."""


class UserLoadError(BackendUnavailable):
    def __init__(self, identity: str):
        super().__init__(f"Could not load user data for {identity}")
        self.identity = identity


class RecordNotFound(RankSyncError):
    def __init__(self, purchase_id: str):
        super().__init__(f"No ledger record for purchase {purchase_id}")
        self.purchase_id = purchase_id


class InvalidTransition(RankSyncError):
    def __init__(self, purchase_id: str, current: str, requested: str):
        super().__init__(f"Purchase {purchase_id} cannot move from {current} to {requested}")
        self.purchase_id = purchase_id
        self.current = current
        self.requested = requested


class InvalidSignature(RankSyncError):
    pass


class MalformedCommand(RankSyncError):
    pass


class MalformedWebhookPayload(RankSyncError):
    pass
