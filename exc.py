class ApplicationError(Exception):
    pass


class ProtocolError(ApplicationError):
    """The admission envelope could not be used."""


class ProviderError(ApplicationError):
    pass


class ClusterUnavailableError(ProviderError):
    """The etcd cluster could not be reached or returned unusable data."""


class ResolutionError(ApplicationError):
    """A pod name does not match any etcd member."""
