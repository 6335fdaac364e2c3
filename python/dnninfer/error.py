# Copyright (c) Microsoft Corporation.
# Licensed under the MIT license.

__all__ = [
    "BaseError",
    "InvalidUsageError",
    "ModelError",
    "SystemError",
]


class BaseError(Exception):
    """Base class of all dnninfer errors."""

    pass


class InvalidUsageError(BaseError):
    """The caller broke an API contract."""

    pass


class ModelError(BaseError):
    """The model description or its parameter files are unusable."""

    pass


class SystemError(BaseError):
    """The execution environment is not ready, e.g. no process group."""

    pass
