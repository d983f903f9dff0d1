"""Schedules listing reconciliation workflows on Temporal."""
import logging
from typing import Optional

from temporalio.client import Client
from temporalio.exceptions import WorkflowAlreadyStartedError
from temporalio.service import RPCError

from errors import CollaboratorUnavailable
from workflows import ListingReconcileWorkflow, reconcile_workflow_id


class TemporalListingReconciler:
    def __init__(self, address: str, namespace: str, task_queue: str, client: Optional[Client] = None):
        self._address = address
        self._namespace = namespace
        self._task_queue = task_queue
        self._client = client

    async def _get_client(self) -> Client:
        """Get or create Temporal client."""
        if self._client is None:
            try:
                self._client = await Client.connect(self._address, namespace=self._namespace)
            except RuntimeError as e:
                raise CollaboratorUnavailable(f"Temporal unreachable at {self._address}: {e}") from e
        return self._client

    async def schedule_mark_unavailable(self, order_id: str, listing_id: str) -> None:
        client = await self._get_client()
        workflow_id = reconcile_workflow_id(order_id)
        try:
            await client.start_workflow(
                ListingReconcileWorkflow.run,
                args=[order_id, listing_id],
                id=workflow_id,
                task_queue=self._task_queue,
            )
        except WorkflowAlreadyStartedError:
            # One reconciliation per order is enough
            logging.info(f"Reconciliation {workflow_id} already running")
            return
        except RPCError as e:
            raise CollaboratorUnavailable(f"Could not start {workflow_id}: {e}") from e
        logging.info(f"Scheduled reconciliation {workflow_id} for listing {listing_id}")
