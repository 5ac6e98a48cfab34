"""Generated shop documents. Content is a plain-text placeholder in PDF clothing."""
from mfg_tracker.datetime_utils import format_datetime_iso, utcnow


class DocumentService:

    @staticmethod
    def assembly_card_text(work_order, generated_at=None):
        generated_at = generated_at or utcnow()
        return "\n".join([
            f"Assembly Card for Work Order: {work_order.wo_number}",
            f"Customer: {work_order.customer or ''}",
            f"Product: {work_order.product or ''}",
            f"Quantity: {work_order.quantity or 0}",
            f"Generated on: {format_datetime_iso(generated_at)}",
        ])

    @staticmethod
    def render(text) -> bytes:
        return text.encode("utf-8")
