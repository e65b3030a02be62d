import json
import re
from dataclasses import dataclass
from typing import Any, Iterable, Mapping


class _Unresolved:
    """Marker for a reference that cannot be resolved (distinct from a JSON null)."""

    _instance = None

    def __new__(cls):
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __repr__(self) -> str:
        return "UNRESOLVED"

    def __bool__(self) -> bool:
        return False


UNRESOLVED: Any = _Unresolved()


@dataclass(frozen=True)
class ParsedReference:
    node_name: str
    field: str
    path: tuple[str, ...]
    full_match: str


class ReferenceResolver:
    """
    Resolves {{NodeName.field.path}} references against already-produced node outputs.

    Unresolvable references are never an error: interpolation leaves them verbatim
    so partially available data during streaming does not corrupt the text.
    """

    REFERENCE_PATTERN = re.compile(r"^\{\{([^.]+)\.(.+)\}\}$")
    OCCURRENCE_PATTERN = re.compile(r"\{\{([^}]+)\}\}")
    ARRAY_SEGMENT = re.compile(r"^(\w+)\[(\d+)\]$")

    @classmethod
    def parse_reference(cls, text: str) -> ParsedReference | None:
        match = cls.REFERENCE_PATTERN.match(text)
        if not match:
            return None
        field, *path = match.group(2).split(".")
        return ParsedReference(
            node_name=match.group(1),
            field=field,
            path=tuple(path),
            full_match=text,
        )

    @classmethod
    def find_references(cls, text: str) -> list[ParsedReference]:
        """All parseable references in left-to-right order."""
        references = []
        for match in cls.OCCURRENCE_PATTERN.finditer(text):
            parsed = cls.parse_reference(match.group(0))
            if parsed:
                references.append(parsed)
        return references

    @classmethod
    def is_reference(cls, text: str) -> bool:
        """True when the whole (stripped) text is exactly one reference."""
        return cls.parse_reference(text.strip()) is not None

    @staticmethod
    def build_node_name_map(nodes: Iterable[Any]) -> dict[str, str]:
        """Map node display names to node ids. Nodes without a name are left out."""
        name_map = {}
        for node in nodes:
            name = node.data.name
            if name:
                name_map[name] = node.id
        return name_map

    @classmethod
    def resolve_reference(
        cls,
        reference: ParsedReference,
        node_outputs: Mapping[str, Any],
        node_name_to_id: Mapping[str, str],
        variables: Mapping[str, Any] | None = None,
    ) -> Any:
        """Return the referenced value, or UNRESOLVED."""
        node_id = node_name_to_id.get(reference.node_name)
        if node_id is None:
            if reference.node_name not in node_outputs:
                return UNRESOLVED
            node_id = reference.node_name

        field, path = reference.field, reference.path

        if field == "runCount" and not path and variables is not None:
            return variables.get(f"node.{node_id}.runCount", 0)

        if node_id not in node_outputs:
            if field == "transcript":
                return cls._transcript(node_id, variables)
            return UNRESOLVED

        output = node_outputs[node_id]

        if isinstance(output, dict):
            if field in output:
                return cls.navigate(output[field], path)
            array_match = cls.ARRAY_SEGMENT.match(field)
            if array_match and array_match.group(1) in output:
                return cls.navigate(output, (field, *path))
            if field == "result":
                return cls.navigate(output, path)
            if field == "transcript":
                return cls._transcript(node_id, variables)
            return UNRESOLVED

        if isinstance(output, list):
            if field == "result":
                return cls.navigate(output, path)
            return UNRESOLVED

        if field == "result":
            return output if not path else UNRESOLVED
        if field == "prompt" and not path:
            return output
        if field == "transcript":
            return cls._transcript(node_id, variables)
        return UNRESOLVED

    @staticmethod
    def _transcript(node_id: str, variables: Mapping[str, Any] | None) -> Any:
        if variables is None:
            return UNRESOLVED
        return variables.get(f"node.{node_id}.transcript", UNRESOLVED)

    @classmethod
    def navigate(cls, value: Any, path: Iterable[str]) -> Any:
        current = value
        for part in path:
            array_match = cls.ARRAY_SEGMENT.match(part)
            if array_match:
                current = cls._step(current, array_match.group(1))
                current = cls._step(current, array_match.group(2))
            else:
                current = cls._step(current, part)
            if current is UNRESOLVED:
                return UNRESOLVED
        return current

    @staticmethod
    def _step(current: Any, key: str) -> Any:
        if isinstance(current, dict):
            return current.get(key, UNRESOLVED)
        if isinstance(current, list) and key.isdigit():
            index = int(key)
            return current[index] if index < len(current) else UNRESOLVED
        return UNRESOLVED

    @staticmethod
    def to_text(value: Any) -> str:
        if isinstance(value, str):
            return value
        if value is None or isinstance(value, (dict, list, bool)):
            return json.dumps(value, ensure_ascii=False, separators=(",", ":"), default=str)
        return str(value)

    @classmethod
    def interpolate(
        cls,
        text: str,
        node_outputs: Mapping[str, Any],
        node_name_to_id: Mapping[str, str],
        variables: Mapping[str, Any] | None = None,
    ) -> str:
        def replacer(match: re.Match) -> str:
            parsed = cls.parse_reference(match.group(0))
            if not parsed:
                return match.group(0)
            value = cls.resolve_reference(parsed, node_outputs, node_name_to_id, variables)
            if value is UNRESOLVED:
                return match.group(0)
            return cls.to_text(value)

        return cls.OCCURRENCE_PATTERN.sub(replacer, text)

    @classmethod
    def resolve_config(
        cls,
        config: Any,
        node_outputs: Mapping[str, Any],
        node_name_to_id: Mapping[str, str],
        variables: Mapping[str, Any] | None = None,
    ) -> Any:
        """
        Recursively interpolates every string inside a configuration structure.
        """
        if isinstance(config, str):
            return cls.interpolate(config, node_outputs, node_name_to_id, variables)
        if isinstance(config, dict):
            return {
                key: cls.resolve_config(value, node_outputs, node_name_to_id, variables)
                for key, value in config.items()
            }
        if isinstance(config, list):
            return [cls.resolve_config(item, node_outputs, node_name_to_id, variables) for item in config]
        return config
