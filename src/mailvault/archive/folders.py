"""Decides which remote folders an archive run visits."""

from __future__ import annotations

import logging
from typing import List, Optional, Sequence

from .mailbox import RemoteMailbox

logger = logging.getLogger(__name__)

INBOX = "INBOX"


class FolderEnumerator:
    """Resolve the folder scope of a run.

    An explicit folder list wins. Otherwise only INBOX is visited unless
    ``all_folders`` is set, in which case every selectable folder the server
    lists is visited with INBOX first.
    """

    def __init__(
        self,
        mailbox: RemoteMailbox,
        all_folders: bool = False,
        folders: Optional[Sequence[str]] = None,
    ) -> None:
        self._mailbox = mailbox
        self._all_folders = all_folders
        self._folders = list(folders) if folders else None

    async def enumerate(self) -> List[str]:
        if self._folders:
            return _dedupe(self._folders)
        if not self._all_folders:
            return [INBOX]

        listed = await self._mailbox.list_folders()
        names: List[str] = []
        for info in listed:
            if not info.selectable:
                logger.debug("Skipping non-selectable folder %s", info.name, extra={"flags": info.flags})
                continue
            names.append(info.name)

        inbox = [name for name in names if name.upper() == INBOX]
        rest = [name for name in names if name.upper() != INBOX]
        ordered = _dedupe(inbox[:1] + rest)
        logger.info("Found %d folders to archive", len(ordered), extra={"folders": ordered})
        return ordered


def _dedupe(names: Sequence[str]) -> List[str]:
    seen = set()
    ordered: List[str] = []
    for name in names:
        if name in seen:
            continue
        seen.add(name)
        ordered.append(name)
    return ordered


__all__ = ["FolderEnumerator", "INBOX"]
