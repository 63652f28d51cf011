"""Exceptions raised while orchestrating a switchover. All of them are fatal to a run."""


class SwitchoverError(Exception):
    """Base class of every switchover failure, optionally bound to the node it happened on"""

    def __init__(self, message, node=None):
        super().__init__(message)
        self.node = node

    @property
    def kind(self):
        return type(self).__name__


class ConnectivityError(SwitchoverError):
    """A node could not be reached through the remote execution channel"""
    pass


class TopologyError(SwitchoverError):
    """The site to host mapping is empty, ambiguous, or disagrees with the live cluster"""
    pass


class StatusParseError(SwitchoverError):
    """The cluster status output was malformed, or no single leader was found on it"""
    pass


class TagUpdateError(SwitchoverError):
    """The remote command rewriting the node tags failed"""
    pass


class VerificationError(SwitchoverError):
    """A change was applied but reading it back did not show the expected value"""
    pass


class ServiceRestartError(SwitchoverError):
    """The HA agent of a node could not be restarted"""
    pass


class StabilityTimeoutError(SwitchoverError):
    """The cluster kept reporting transient states after all the allowed polls"""
    pass


class ElectionCommandError(SwitchoverError):
    """The leadership transfer command failed, or leadership did not move to the candidate"""
    pass
