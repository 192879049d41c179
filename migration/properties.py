"""
Descriptor Properties

Ordered key/value configuration blocks attached to plan nodes. Every component
(lookup, resolver, phase log sink, post-processor) reads its own settings from one.
"""

from dataclasses import dataclass
from typing import Dict, Iterable, Iterator, Optional, Tuple, Union

from migration.errors import PlanConfigurationError

TRUE_VALUES = {"true", "yes", "y", "1"}
FALSE_VALUES = {"false", "no", "n", "0"}


@dataclass(frozen=True)
class DescriptorProperty:
    """A single key/value pair scoped to its owning plan node."""

    name: str
    value: str


class PropertyBlock:
    """
    Read-only, ordered collection of descriptor properties.

    Keys are unique within a block. Blank values are treated as absent.
    """

    def __init__(self, properties: Iterable[DescriptorProperty] = (), owner: str = ""):
        self.owner = owner
        self._values: Dict[str, str] = {}
        for prop in properties:
            if prop.name in self._values:
                raise PlanConfigurationError(
                    f"Duplicate property '{prop.name}' in {owner or 'property block'}"
                )
            self._values[prop.name] = "" if prop.value is None else str(prop.value)

    @classmethod
    def from_mapping(cls, values: Optional[Dict[str, object]], owner: str = "") -> "PropertyBlock":
        values = values or {}
        return cls(
            (DescriptorProperty(str(name), "" if value is None else str(value))
             for name, value in values.items()),
            owner=owner,
        )

    def __iter__(self) -> Iterator[DescriptorProperty]:
        return (DescriptorProperty(name, value) for name, value in self._values.items())

    def __len__(self) -> int:
        return len(self._values)

    def __contains__(self, name: str) -> bool:
        return self.get(name) is not None

    def items(self) -> Iterator[Tuple[str, str]]:
        return iter(self._values.items())

    def as_dict(self) -> Dict[str, str]:
        return dict(self._values)

    def get(self, name: str, default: Optional[str] = None) -> Optional[str]:
        value = self._values.get(name)
        if value is None or not value.strip():
            return default
        return value

    def require(self, name: str) -> str:
        """
        Get a property that must be present and non-blank.

        Raises:
            PlanConfigurationError: If the property is missing or blank
        """
        value = self.get(name)
        if value is None:
            raise PlanConfigurationError(
                f"Missing required property '{name}' in {self.owner or 'property block'}"
            )
        return value

    def get_bool(self, name: str, required: bool = False, default: bool = False) -> bool:
        raw = self.require(name) if required else self.get(name)
        if raw is None:
            return default
        parsed = parse_bool(raw)
        if parsed is None:
            raise PlanConfigurationError(
                f"Property '{name}' = '{raw}' in {self.owner or 'property block'} is not a boolean"
            )
        return parsed

    def get_int(self, name: str, required: bool = False, default: Optional[int] = None) -> Optional[int]:
        raw = self.require(name) if required else self.get(name)
        if raw is None:
            return default
        try:
            return int(raw.strip())
        except ValueError:
            raise PlanConfigurationError(
                f"Property '{name}' = '{raw}' in {self.owner or 'property block'} is not an integer"
            ) from None

    def get_list(self, name: str, required: bool = False, separator: str = ",") -> list:
        raw = self.require(name) if required else self.get(name)
        if raw is None:
            return []
        return [item.strip() for item in raw.split(separator) if item.strip()]

    def __repr__(self) -> str:
        return f"PropertyBlock({self.owner!r}, {self._values!r})"


def parse_bool(value: Union[str, bool, None]) -> Optional[bool]:
    """
    Parse the ways a feed or a plan author might spell a boolean.

    Returns:
        True/False, or None when the value is not recognizable
    """
    if isinstance(value, bool):
        return value
    if value is None:
        return None
    lowered = str(value).strip().lower()
    if lowered in TRUE_VALUES:
        return True
    if lowered in FALSE_VALUES:
        return False
    return None
