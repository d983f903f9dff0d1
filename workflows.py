"""
Temporal workflows for reconciling listing availability with order state.
When an order becomes HELD but the listing service could not be told, the
listing update is retried here instead of rolling the payment back.
"""
from datetime import timedelta
from temporalio import workflow
from temporalio.common import RetryPolicy
from typing import Dict, Any

# Import activities, passing them through the sandbox without reloading the module
with workflow.unsafe.imports_passed_through():
    from activities import ListingActivities


def reconcile_workflow_id(order_id: str) -> str:
    return f"listing-unavailable-{order_id}"


@workflow.defn
class ListingReconcileWorkflow:
    """Keeps retrying until the listing of a held order is marked unavailable."""

    def __init__(self):
        self._order_id: str = ""
        self._listing_id: str = ""
        self._current_step: str = "initialized"

    @workflow.query
    def get_status(self) -> Dict[str, Any]:
        """Query to get current workflow status."""
        return {
            "order_id": self._order_id,
            "listing_id": self._listing_id,
            "current_step": self._current_step,
        }

    @workflow.run
    async def run(self, order_id: str, listing_id: str) -> Dict[str, Any]:
        self._order_id = order_id
        self._listing_id = listing_id
        self._current_step = "marking_unavailable"
        workflow.logger.info(f"[WORKFLOW] Reconciling listing {listing_id} for order {order_id}")

        retry_policy = RetryPolicy(
            initial_interval=timedelta(seconds=1),
            maximum_interval=timedelta(minutes=5),
            backoff_coefficient=2.0,
        )

        try:
            listing_status = await workflow.execute_activity_method(
                ListingActivities.mark_listing_unavailable,
                args=[listing_id],
                start_to_close_timeout=timedelta(seconds=10),
                schedule_to_close_timeout=timedelta(days=1),
                retry_policy=retry_policy,
            )
        except Exception as e:
            self._current_step = "failed"
            workflow.logger.error(f"Listing {listing_id} for order {order_id} still not reconciled: {str(e)}")
            raise

        self._current_step = "completed"
        workflow.logger.info(f"[WORKFLOW] Listing {listing_id} marked {listing_status} for order {order_id}")
        return {
            "status": "reconciled",
            "order_id": order_id,
            "listing_id": listing_id,
            "listing_status": listing_status,
        }
