from __future__ import annotations

import logging

from pageflow.browser.driver import SessionDriver
from pageflow.browser.scripts import CURRENT_ORIGIN, READ_STORAGE, WRITE_STORAGE
from pageflow.cache.state import Cookie, OriginStorage, StorageState

logger = logging.getLogger(__name__)


async def apply_storage_state(driver: SessionDriver, state: StorageState) -> int:
    """Restore cookies and the current origin's storage. Returns the number of origins written.

    Storage of other origins stays in ``state`` and is applied once the session
    navigates there and this function is called again.
    """
    if state.cookies:
        await driver.set_cookies([cookie.to_dict() for cookie in state.cookies])
        logger.debug("Restored %d cookie(s)", len(state.cookies))

    if not state.origins:
        return 0
    current_origin = str(await driver.evaluate(CURRENT_ORIGIN) or "")
    entry = state.origin(current_origin)
    if entry is None:
        logger.debug("No cached storage for origin %s", current_origin or "<none>")
        return 0
    written = await driver.evaluate(
        WRITE_STORAGE,
        entry.origin,
        entry.local_storage or {},
        entry.session_storage or {},
    )
    if written:
        logger.debug("Restored storage for origin %s", entry.origin)
        return 1
    return 0


async def capture_storage_state(driver: SessionDriver, base: StorageState | None = None) -> StorageState:
    """Snapshot cookies and the current origin's storage, merged over ``base``."""
    cookies = [Cookie.from_dict(raw) for raw in await driver.get_cookies() if isinstance(raw, dict)]
    state = StorageState(
        cookies=cookies,
        origins=list(base.origins) if base is not None else [],
    )
    dump = await driver.evaluate(READ_STORAGE)
    if isinstance(dump, dict) and dump.get("origin") and dump.get("origin") != "null":
        state.merge_origin(
            OriginStorage(
                origin=str(dump["origin"]),
                local_storage={str(k): str(v) for k, v in (dump.get("localStorage") or {}).items()},
                session_storage={str(k): str(v) for k, v in (dump.get("sessionStorage") or {}).items()},
            )
        )
    return state
