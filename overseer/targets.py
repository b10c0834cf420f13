from __future__ import annotations

import logging
from typing import Dict, Iterable, Iterator, List, Mapping, Optional

from .errors import ConfigurationError
from .models import AllTargets, ByTag, Explicit, Local, LocalOnly, Target, TargetSelector

logger = logging.getLogger("overseer.targets")

IMPLICIT_LOCAL_ID = "localhost"


class TargetDirectory(Mapping[str, Target]):
    """Immutable id -> Target view used by the resolver."""

    def __init__(self, targets: Iterable[Target] = ()):
        entries: Dict[str, Target] = {}
        for target in targets:
            if target.id in entries:
                raise ConfigurationError(f'Error: Duplicate target id "{target.id}".')
            entries[target.id] = target
        self._targets = entries

    def __getitem__(self, key: str) -> Target:
        return self._targets[key]

    def __iter__(self) -> Iterator[str]:
        return iter(self._targets)

    def __len__(self) -> int:
        return len(self._targets)

    def __repr__(self) -> str:
        return f"TargetDirectory({sorted(self._targets)})"


def validate_selector(selector: TargetSelector, directory: Optional[Mapping[str, Target]] = None) -> None:
    if isinstance(selector, ByTag) and not selector.tags:
        raise ConfigurationError("Error: tag selector must name at least one tag.")
    if isinstance(selector, Explicit):
        if not selector.target_ids:
            raise ConfigurationError("Error: explicit selector must name at least one target.")
        if directory is not None:
            unknown = sorted(set(selector.target_ids) - set(directory))
            if unknown:
                raise ConfigurationError(f"Error: explicit selector references unknown targets: {unknown}.")


def resolve(selector: TargetSelector, directory: Mapping[str, Target]) -> List[Target]:
    """Expand ``selector`` into enabled targets, deduplicated and sorted by id.

    An empty result is valid; "no matching servers" is a normal steady state.
    """
    enabled = [target for target in directory.values() if target.enabled]

    if isinstance(selector, AllTargets):
        selected = enabled
    elif isinstance(selector, ByTag):
        selected = [target for target in enabled if target.tags & selector.tags]
    elif isinstance(selector, Explicit):
        selected = []
        for target_id in selector.target_ids:
            target = directory.get(target_id)
            if target is None:
                logger.warning("Selector references unknown target %s; skipping.", target_id)
                continue
            if not target.enabled:
                logger.info("Target %s is disabled; skipping.", target_id)
                continue
            selected.append(target)
    elif isinstance(selector, LocalOnly):
        selected = [target for target in enabled if isinstance(target.mode, Local)]
        if not selected:
            selected = [Target(id=IMPLICIT_LOCAL_ID, mode=Local())]
    else:
        raise ConfigurationError(f"Error: Unsupported target selector {selector!r}.")

    unique: Dict[str, Target] = {target.id: target for target in selected}
    return [unique[target_id] for target_id in sorted(unique)]
