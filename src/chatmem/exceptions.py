"""Exception hierarchy."""

from __future__ import annotations


class ChatmemError(Exception):
    """Base class for all chatmem errors."""


class ConfigError(ChatmemError):
    """Invalid chunking, embedding or search configuration."""


class ValidationError(ChatmemError):
    """Caller supplied an invalid argument."""


class NotFoundError(ChatmemError):
    """A file, session, fact or task does not exist for the caller."""


class StorageError(ChatmemError):
    """Storage layer misuse or inconsistency."""


class SchedulerError(ChatmemError):
    pass


class TaskNotFoundError(SchedulerError, NotFoundError):
    pass


class TaskAlreadyRunningError(SchedulerError):
    pass
