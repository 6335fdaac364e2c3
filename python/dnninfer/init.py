# Copyright (c) Microsoft Corporation.
# Licensed under the MIT license.

from .config import Config

__all__ = ["init"]


def init():
    """Resets the process-wide state of dnninfer."""
    Config.reset()
