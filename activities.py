"""
Temporal activities that call the listing service.
Keep activities small: parameter unpacking, await the collaborator, return its result.
"""
import logging
import asyncio
from temporalio import activity

from collaborators import ListingDirectory
from errors import CollaboratorUnavailable


async def handle_collaborator_call(func, *args, **kwargs):
    """Wrapper to log collaborator failures before Temporal retries them."""
    try:
        return await func(*args, **kwargs)
    except CollaboratorUnavailable as e:
        logging.info(f"Listing service unavailable (will retry): {e.message}")
        raise
    except asyncio.CancelledError:
        logging.info("Listing service call timed out (will retry)")
        raise


class ListingActivities:
    def __init__(self, listings: ListingDirectory):
        self._listings = listings

    @activity.defn(name="mark_listing_unavailable")
    async def mark_listing_unavailable(self, listing_id: str) -> str:
        """Mark a listing sold. Safe to repeat: the listing service sets an absolute status."""
        await handle_collaborator_call(self._listings.mark_unavailable, listing_id)
        return "unavailable"
