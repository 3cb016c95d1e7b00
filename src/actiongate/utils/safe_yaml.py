"""YAML loading for ``actiongate.yaml`` with duplicate key detection.

PyYAML's ``safe_load`` silently keeps the last of two identical mapping
keys. A settings file with two ``default_protect:`` lines could flip the
gate to default-pass while the first line is the one a reviewer reads, so
duplicates are an error here.
"""

from __future__ import annotations

from typing import IO, Union

import yaml


class _StrictLoader(yaml.SafeLoader):
    """SafeLoader that refuses duplicate mapping keys."""


def _construct_mapping_no_duplicates(loader, node):
    loader.flatten_mapping(node)
    pairs = loader.construct_pairs(node)
    seen: set = set()
    for key, _value in pairs:
        if key in seen:
            raise ValueError(
                f"Duplicate YAML key: {key!r} "
                f"(line {node.start_mark.line + 1})"
            )
        seen.add(key)
    return dict(pairs)


_StrictLoader.add_constructor(
    yaml.resolver.BaseResolver.DEFAULT_MAPPING_TAG,
    _construct_mapping_no_duplicates,
)


def safe_yaml_load(stream: Union[str, IO[str]]) -> object:
    """Drop-in for ``yaml.safe_load`` that raises ``ValueError`` on duplicate keys."""
    return yaml.load(stream, Loader=_StrictLoader)
