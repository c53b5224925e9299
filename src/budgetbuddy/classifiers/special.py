import re

from budgetbuddy.models import BankTransaction, ExternalLink

AMAZON_PATTERNS = (
    r"AMAZON\s*(PAYMENTS|EU|DE)?",
    r"AMZN\s*MKTP",
    r"Amazon\.de",
    r"AMAZON\s*\.DE",
)

PAYPAL_PATTERNS = (
    r"PAYPAL\s*\*",
    r"PP\.\d+",
    r"PAYPAL",
)

# Amazon order ids look like 302-1234567-1234567, optionally preceded by a
# two digit line number the bank prepends to the remittance text.
AMAZON_ORDER_ID_PATTERN = r"(?:(?:^|\s)\d{2})?([A-Z0-9]{3}-\d{7}-\d{7})"

AMAZON_ORDER_DETAILS_URL = "https://www.amazon.de/gp/your-account/order-details?ie=UTF8&orderID={order_id}"
AMAZON_ORDER_HISTORY_URL = "https://www.amazon.de/gp/your-account/order-history"
PAYPAL_ACTIVITY_URL = "https://www.paypal.com/activities"


def _compile_any(patterns: tuple[str, ...]) -> re.Pattern[str]:
    return re.compile("|".join(f"(?:{pattern})" for pattern in patterns), re.IGNORECASE)


class SpecialCaseDetector:
    """Flags marketplace and payment-processor transactions with lookup links."""

    def __init__(self) -> None:
        self._amazon = _compile_any(AMAZON_PATTERNS)
        self._paypal = _compile_any(PAYPAL_PATTERNS)
        self._amazon_order_id = re.compile(AMAZON_ORDER_ID_PATTERN)

    @staticmethod
    def _text(transaction: BankTransaction) -> str:
        if transaction.payee:
            return f"{transaction.payee} {transaction.memo}"
        return transaction.memo

    def _amazon_link(self, text: str) -> ExternalLink:
        match = self._amazon_order_id.search(text)
        if match:
            order_id = match.group(1)
            return ExternalLink(
                label=f"Bestellung {order_id}",
                url=AMAZON_ORDER_DETAILS_URL.format(order_id=order_id),
            )
        return ExternalLink(label="Amazon Orders", url=AMAZON_ORDER_HISTORY_URL)

    def detect(self, transaction: BankTransaction) -> list[ExternalLink]:
        text = self._text(transaction)
        links: list[ExternalLink] = []
        if self._amazon.search(text):
            links.append(self._amazon_link(text))
        if self._paypal.search(text):
            links.append(ExternalLink(label="PayPal Activity", url=PAYPAL_ACTIVITY_URL))
        return links
