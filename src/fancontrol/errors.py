from typing import List, Optional


class FanControlError(Exception):
    """Base class for every fatal fancontrol condition."""


class ConfigError(FanControlError):
    pass


class MissingField(ConfigError):
    pass


class MalformedMapping(ConfigError):
    def __init__(self, message: str, channel: Optional[str] = None):
        super().__init__(message)
        self.channel = channel


class UnsupportedFanGroup(ConfigError):
    def __init__(self, message: str, channel: str):
        super().__init__(message)
        self.channel = channel


class InvalidRange(ConfigError):
    def __init__(self, message: str, channel: str):
        super().__init__(message)
        self.channel = channel


class PathError(FanControlError):
    pass


class UnrecognizedRoot(PathError):
    pass


class RootNotFound(PathError):
    pass


class MissingSysfsNode(PathError):
    def __init__(self, nodes: List[str]):
        super().__init__(
            "At least one referenced file is missing. Either some required kernel "
            "modules haven't been loaded, or your configuration file is outdated. "
            "In the latter case, you should run pwmconfig again."
        )
        self.nodes = nodes


class FanIOError(FanControlError):
    def __init__(self, message: str, path: Optional[str] = None):
        super().__init__(message)
        self.path = path


class NodeNotFoundError(FanIOError):
    pass


class NodeParseError(FanIOError):
    pass


class AlreadyRunningError(FanControlError):
    pass
