class MirrorError(Exception):
    pass


class InvalidUrl(MirrorError, ValueError):
    def __init__(self, url: str, reason: str = "unusable url"):
        super().__init__(f"{reason}: {url!r}")
        self.url = url
        self.reason = reason


class TransportError(MirrorError):
    def __init__(self, url: str, cause: object = None):
        super().__init__(f"transport error for {url}: {cause}")
        self.url = url
        self.cause = cause


class DecodeError(MirrorError):
    pass


class PersistenceError(MirrorError):
    pass
