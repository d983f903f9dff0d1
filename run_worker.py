"""
Temporal worker for listing reconciliation.
Retries marking listings unavailable for orders that became HELD while the
listing service was down.
"""
import asyncio
import sys
import os
import logging

sys.path.append(os.path.dirname(os.path.abspath(__file__)))

logging.basicConfig(
    level=logging.INFO,
    format='%(levelname)s: %(message)s'
)
# show workflow logs but hide noise
logging.getLogger('temporalio').setLevel(logging.ERROR)
logging.getLogger('temporalio.worker').setLevel(logging.ERROR)
logging.getLogger('temporalio.client').setLevel(logging.ERROR)
logging.getLogger('temporalio.activity').setLevel(logging.ERROR)
logging.getLogger('temporalio.workflow').setLevel(logging.INFO)  # Show workflow logs
logging.getLogger('httpx').setLevel(logging.WARNING)

from temporalio.client import Client
from temporalio.worker import Worker

from activities import ListingActivities
from collaborators import HttpListingDirectory
from settings import LISTING_SERVICE_URL, LISTING_TASK_QUEUE, TEMPORAL_ADDRESS, TEMPORAL_NAMESPACE
from workflows import ListingReconcileWorkflow


async def run_listing_worker():
    """Run the listing reconciliation worker."""
    client = await Client.connect(TEMPORAL_ADDRESS, namespace=TEMPORAL_NAMESPACE)
    listing_activities = ListingActivities(HttpListingDirectory(LISTING_SERVICE_URL))

    worker = Worker(
        client,
        task_queue=LISTING_TASK_QUEUE,
        workflows=[ListingReconcileWorkflow],
        activities=[listing_activities.mark_listing_unavailable],
    )

    print(f"Starting Listing Worker on task queue: {LISTING_TASK_QUEUE}")
    await worker.run()


if __name__ == "__main__":
    try:
        asyncio.run(run_listing_worker())
    except KeyboardInterrupt:
        print("\nWorker stopped by user")
    except Exception as e:
        print(f"Worker error: {e}")
        sys.exit(1)
