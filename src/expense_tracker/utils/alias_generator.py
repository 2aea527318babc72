"""
Family alias generation.

An alias is the short public join code (``[A-Z0-9]``, fixed length) shared with
people who want to join a family. Uniqueness is checked through an injected
async oracle, normally ``FamilyStore.alias_exists``. The oracle is only a
pre-check; the unique index on ``alias_name`` is what finally guarantees it.
"""

import re
import secrets
import string
from typing import Awaitable, Callable, List

from expense_tracker.config import settings
from expense_tracker.managers.logging_manager import get_logger

logger = get_logger(prefix="[AliasGenerator]")

ALIAS_ALPHABET = string.ascii_uppercase + string.digits

AliasExists = Callable[[str], Awaitable[bool]]


class AliasGenerationError(RuntimeError):
    """No free alias was found within the attempt budget."""


def alias_pattern(length: int = settings.FAMILY_ALIAS_LENGTH) -> "re.Pattern[str]":
    return re.compile(rf"^[A-Z0-9]{{{length}}}$")


def is_valid_alias(alias: str, length: int = settings.FAMILY_ALIAS_LENGTH) -> bool:
    return bool(alias) and alias_pattern(length).match(alias) is not None


def random_alias(length: int = settings.FAMILY_ALIAS_LENGTH) -> str:
    return "".join(secrets.choice(ALIAS_ALPHABET) for _ in range(length))


async def generate_unique_alias(
    alias_exists: AliasExists,
    length: int = settings.FAMILY_ALIAS_LENGTH,
    max_attempts: int = settings.FAMILY_ALIAS_MAX_GENERATION_ATTEMPTS,
    candidate_factory: Callable[[int], str] = random_alias,
) -> str:
    """
    Generate an alias that the oracle reports as unused.

    Args:
        alias_exists: Async callable returning True when the alias is taken
        length: Alias length
        max_attempts: Maximum candidates to try
        candidate_factory: Produces a candidate of the given length

    Returns:
        str: A free alias

    Raises:
        AliasGenerationError: If every candidate collided
    """
    attempted: List[str] = []
    for attempt in range(max_attempts):
        candidate = candidate_factory(length)
        attempted.append(candidate)
        if not await alias_exists(candidate):
            logger.debug("Generated family alias %s (attempt %d)", candidate, attempt + 1)
            return candidate

    logger.error(
        "Unable to generate unique family alias after %d attempts. Last candidates: %s",
        max_attempts,
        ",".join(attempted[-5:]),
    )
    raise AliasGenerationError(f"Unable to generate unique family alias after {max_attempts} attempts")
