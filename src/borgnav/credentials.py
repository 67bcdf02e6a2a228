"""Process-lifetime passphrase cache."""
from __future__ import annotations

import os
from collections.abc import Mapping
from typing import TYPE_CHECKING

from .providers.engine import PASSCOMMAND_ENV_VAR, PASSPHRASE_ENV_VAR

if TYPE_CHECKING:
    from .config import RepositoryContext
    from .prompts import Prompter


class PassphraseCache:
    """Ask for the repository passphrase at most once per process.

    The cache is passed explicitly to everything that talks to the engine. An
    empty answer means "no passphrase" and is cached like any other answer.
    When ``BORG_PASSPHRASE`` or ``BORG_PASSCOMMAND`` is set the engine sources
    its own secret and no prompt is ever shown.
    """

    def __init__(
        self,
        prompter: Prompter | None = None,
        *,
        env: Mapping[str, str] | None = None,
        secret: str | None = None,
    ) -> None:
        """Create a cache, optionally pre-filled with *secret*."""
        self._prompter = prompter
        self._env = os.environ if env is None else env
        self._secret = secret
        self._filled = secret is not None
        self.prompt_count = 0

    @property
    def filled(self) -> bool:
        """Return True once a secret (possibly empty) has been cached."""
        return self._filled

    def engine_supplies_secret(self) -> bool:
        """Return True when the environment already configures a passphrase."""
        return PASSPHRASE_ENV_VAR in self._env or PASSCOMMAND_ENV_VAR in self._env

    def ensure(self, ctx: RepositoryContext) -> str | None:
        """Return the cached secret, prompting on first use."""
        if self.engine_supplies_secret():
            return None
        if not self._filled:
            if self._prompter is None:
                raise RuntimeError("No prompter available to ask for the repository passphrase.")
            self._secret = self._prompter.secret(
                f"Enter passphrase for repo {ctx.locator} (leave empty if none)"
            )
            self._filled = True
            self.prompt_count += 1
        return self._secret


__all__ = ["PassphraseCache"]
