"""
Manually reconcile a listing with a held order.
Usage: python run_workflow.py <order_id> <listing_id>
"""
import asyncio
import sys
import os
import time

# Add the current directory to Python path for imports
sys.path.append(os.path.dirname(os.path.abspath(__file__)))

from temporalio.client import Client
from settings import LISTING_TASK_QUEUE, TEMPORAL_ADDRESS, TEMPORAL_NAMESPACE
from workflows import ListingReconcileWorkflow, reconcile_workflow_id


async def main(order_id: str, listing_id: str) -> int:
    print(f"Reconciling listing {listing_id} for order {order_id}")
    print("-" * 50)

    client = await Client.connect(TEMPORAL_ADDRESS, namespace=TEMPORAL_NAMESPACE)

    try:
        start_time = time.time()
        handle = await client.start_workflow(
            ListingReconcileWorkflow.run,
            args=[order_id, listing_id],
            id=reconcile_workflow_id(order_id),
            task_queue=LISTING_TASK_QUEUE,
        )
        print(f"Workflow started with ID: {handle.id}")
        print("Waiting for workflow completion...")

        result = await handle.result()
        print(f"Reconciled in {time.time() - start_time:.3f} seconds")
        print(f"Result: {result}")
    except Exception as e:
        print(f"Workflow failed: {e}")
        return 1

    return 0


if __name__ == "__main__":
    if len(sys.argv) != 3:
        print(__doc__.strip())
        sys.exit(2)
    try:
        sys.exit(asyncio.run(main(sys.argv[1], sys.argv[2])))
    except KeyboardInterrupt:
        print("\nStopped by user")
        sys.exit(1)
