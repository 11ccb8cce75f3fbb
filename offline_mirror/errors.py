class MirrorError(Exception):
    pass


class ConfigError(MirrorError):
    """Invalid option value, raised before the crawl starts."""


class UnsafeOutputDirError(MirrorError):
    pass


class BackendError(MirrorError):
    pass
