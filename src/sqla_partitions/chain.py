from __future__ import annotations

import logging
import sys
from typing import Any, Final

from .descriptors import Direct, LinkStep, ManyToMany, MultiHop, RelationshipDescriptor
from .errors import ChainTooDeep
from .registry import Registry


if sys.version_info >= (3, 11):
    from typing import assert_never
else:
    from typing_extensions import assert_never


logger = logging.getLogger(__name__)

MAX_CHAIN_DEPTH: Final[int] = 20


def build_chain(registry: Registry, owner: Any, name: str) -> tuple[LinkStep, ...]:
    """Resolve relationship *name* on *owner* into an ordered join chain.

    The chain runs from the owner to the related entity: ``chain[0].owner`` is
    *owner* and each step's ``related`` is the next step's ``owner``.

    * Direct relationships give one step.
    * Many-to-many relationships give two steps through the association
      table. Relationship constraints go on the second step; association
      table constraints on the first (whose related side is that table).
    * Multi-hop relationships concatenate the chains of their hops, each
      hop resolved against the type reached so far.

    Chains are rebuilt on every call and never cached.

    Raises:
        UnknownRelationship: If *name*, or any hop, is undefined.
        ChainTooDeep: If the chain has more than ``MAX_CHAIN_DEPTH`` steps.
    """
    chain = _chain_for(registry, registry.lookup(owner, name))
    if len(chain) > MAX_CHAIN_DEPTH:
        raise ChainTooDeep(len(chain), MAX_CHAIN_DEPTH)

    logger.debug("Built %d-step chain for %s.%s", len(chain), owner.__name__, name)
    return chain


def _chain_for(
    registry: Registry,
    descriptor: RelationshipDescriptor,
    expanding: frozenset[MultiHop] = frozenset(),
) -> tuple[LinkStep, ...]:
    match descriptor:
        case Direct():
            return (
                LinkStep(
                    owner=descriptor.owner,
                    related=descriptor.related,
                    owner_key=descriptor.owner_key,
                    related_key=descriptor.related_key,
                    constraints=descriptor.constraints,
                ),
            )
        case ManyToMany():
            return (
                LinkStep(
                    owner=descriptor.owner,
                    related=descriptor.join_through,
                    owner_key=descriptor.owner_key,
                    related_key=descriptor.owner_join_key,
                    constraints=descriptor.join_constraints,
                ),
                LinkStep(
                    owner=descriptor.join_through,
                    related=descriptor.related,
                    owner_key=descriptor.related_join_key,
                    related_key=descriptor.related_key,
                    constraints=descriptor.constraints,
                ),
            )
        case MultiHop():
            if descriptor in expanding:
                # A hop that leads back into itself never terminates.
                raise ChainTooDeep(MAX_CHAIN_DEPTH + 1, MAX_CHAIN_DEPTH)

            steps: list[LinkStep] = []
            current = descriptor.owner
            for hop in descriptor.hops:
                hop_descriptor = registry.lookup(current, hop)
                steps.extend(_chain_for(registry, hop_descriptor, expanding | {descriptor}))
                if len(steps) > MAX_CHAIN_DEPTH:
                    raise ChainTooDeep(len(steps), MAX_CHAIN_DEPTH)
                current = hop_descriptor.related
            return tuple(steps)
        case _:
            assert_never(descriptor)
