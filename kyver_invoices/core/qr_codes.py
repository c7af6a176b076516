"""QR code rendering for payment links."""
import io
from urllib.parse import urlparse

import qrcode
import structlog
from qrcode.constants import ERROR_CORRECT_M
from qrcode.exceptions import DataOverflowError

from kyver_invoices.core.exceptions import EncodingError
from kyver_invoices.monitoring.metrics import metrics

logger = structlog.get_logger(__name__)

DEFAULT_SIZE = 300
DEFAULT_MAX_LENGTH = 2000
BORDER_MODULES = 4

PNG_SIGNATURE = b"\x89PNG\r\n\x1a\n"


def validate_payment_uri(payment_uri: str, max_length: int = DEFAULT_MAX_LENGTH) -> str:
    """
    Check that a payment URI can be put in a QR code.

    Raises:
        EncodingError: If the URI is empty, too long or not http(s)
    """
    if not payment_uri or not payment_uri.strip():
        raise EncodingError("Payment URI is empty")

    payment_uri = payment_uri.strip()
    if len(payment_uri) > max_length:
        raise EncodingError(f"Payment URI longer than {max_length} characters")

    parsed = urlparse(payment_uri)
    if parsed.scheme not in ("http", "https") or not parsed.netloc:
        raise EncodingError("Payment URI must be an http(s) URL")

    return payment_uri


def render(
    payment_uri: str,
    *,
    size: int = DEFAULT_SIZE,
    max_length: int = DEFAULT_MAX_LENGTH,
) -> bytes:
    """
    Render a payment URI as a PNG QR code.

    The image is at most ``size`` pixels wide; modules are scaled to whole
    pixels, so small symbols come out slightly smaller than ``size``.

    Args:
        payment_uri: http(s) URL to encode
        size: Target image width in pixels
        max_length: Longest accepted URI

    Returns:
        bytes: PNG image data

    Raises:
        EncodingError: If the URI is invalid or does not fit in a QR symbol
    """
    try:
        payment_uri = validate_payment_uri(payment_uri, max_length)

        code = qrcode.QRCode(
            version=None,
            error_correction=ERROR_CORRECT_M,
            box_size=1,
            border=BORDER_MODULES,
        )
        code.add_data(payment_uri)
        try:
            code.make(fit=True)
        except (DataOverflowError, ValueError) as e:
            raise EncodingError(f"Payment URI does not fit in a QR code: {e}") from e

        width_in_modules = code.modules_count + 2 * BORDER_MODULES
        code.box_size = max(1, size // width_in_modules)

        buffer = io.BytesIO()
        code.make_image(fill_color="black", back_color="white").save(buffer, format="PNG")
    except EncodingError as e:
        metrics.record_qr_render("failed")
        logger.warning("qr_code_render_failed", error=str(e))
        raise

    metrics.record_qr_render("success")
    return buffer.getvalue()
