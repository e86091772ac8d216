"""Exceptions raised by the tool layer."""

from __future__ import annotations


class ToolUnavailableError(LookupError):
    """The model called a tool that is not in the current capability set.

    Callers break out of the model loop on this error instead of retrying.
    """

    def __init__(self, tool_name: str):
        super().__init__(f'tool "{tool_name}" is not available in this context')
        self.tool_name = tool_name


class ContentResolveError(ValueError):
    pass


class InvalidLabelError(ValueError):
    def __init__(self, label: str):
        super().__init__(
            f'invalid temp label "{label}": must match [A-Za-z0-9][A-Za-z0-9_-]{{0,62}}'
        )
        self.label = label


class CapabilityError(ValueError):
    pass
