"""Action and target identifiers.

An ActionId names exactly one action definition. A TargetId is a pattern
used in dependency declarations and on the command line; its scope may be
the wildcard, in which case it matches every scope of that type.
"""

from dataclasses import dataclass

from errors import ValidationError

WILDCARD = '*'


@dataclass(frozen=True)
class ActionId:
    """Identity of one action definition.

    Attributes:
        type: Action type (e.g. 'daemonStart')
        scope: Instance of that type (role name, or 'cluster')
    """
    type: str
    scope: str

    def __str__(self) -> str:
        return f'{self.type}:{self.scope}'


@dataclass(frozen=True)
class TargetId:
    """Pattern matching one or more ActionIds."""
    type: str
    scope: str = WILDCARD

    @property
    def is_wildcard(self) -> bool:
        return self.scope == WILDCARD

    def matches(self, action_id: ActionId) -> bool:
        """True if action_id has this type and, unless wildcard, this scope."""
        if action_id.type != self.type:
            return False
        return self.is_wildcard or self.scope == action_id.scope

    @classmethod
    def parse(cls, text: str) -> 'TargetId':
        """Parse 'type' or 'type:scope'.

        Raises:
            ValidationError: On empty parts, whitespace, or extra separators
        """
        if not text or text != text.strip() or any(c.isspace() for c in text):
            raise ValidationError(f"Malformed target reference: {text!r}")
        parts = text.split(':')
        if len(parts) > 2 or not all(parts):
            raise ValidationError(f"Malformed target reference: {text!r}")
        if len(parts) == 1:
            return cls(type=parts[0])
        return cls(type=parts[0], scope=parts[1])

    def __str__(self) -> str:
        return f'{self.type}:{self.scope}'
