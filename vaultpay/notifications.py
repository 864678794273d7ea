import logging
from decimal import Decimal

logger = logging.getLogger(__name__)


class PaymentNotifier:
    """Customer emails sent as side effects of the payment workflow.

    Delivery belongs to the notification service; here the messages are
    recorded in the log so the workflow has a single seam to hook into.
    """

    def send_payment_confirmation(self, order_id: str) -> None:
        logger.info(f"[Email] Sending payment confirmation for order {order_id}")

    def send_payment_failure(self, order_id: str) -> None:
        logger.info(f"[Email] Sending payment failure notification for order {order_id}")

    def send_refund_notification(self, order_id: str, amount: Decimal) -> None:
        logger.info(f"[Email] Sending refund notification for order {order_id} - Amount: {amount}")
