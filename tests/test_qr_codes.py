"""
Tests for QR code rendering.
"""
import io

import pytest
from PIL import Image

from kyver_invoices.core.exceptions import EncodingError
from kyver_invoices.core.qr_codes import PNG_SIGNATURE, render, validate_payment_uri

CHECKOUT_URL = "https://checkout.stripe.com/c/pay/cs_test_a1b2c3"


class TestQRCodes:
    """Test suite for QR code rendering."""

    @pytest.mark.unit
    def test_render_returns_png(self) -> None:
        """Test that a checkout URL renders as a PNG no wider than requested."""
        data = render(CHECKOUT_URL, size=300)

        assert data.startswith(PNG_SIGNATURE)
        image = Image.open(io.BytesIO(data))
        assert image.format == "PNG"
        assert image.width <= 300
        assert image.width == image.height

    @pytest.mark.unit
    def test_render_is_deterministic(self) -> None:
        """Test that the same URI always produces the same image."""
        assert render(CHECKOUT_URL) == render(CHECKOUT_URL)

    @pytest.mark.unit
    def test_tiny_size_still_renders(self) -> None:
        """Test that sizes below one pixel per module fall back to one pixel."""
        data = render(CHECKOUT_URL, size=10)
        assert Image.open(io.BytesIO(data)).width > 10

    @pytest.mark.unit
    @pytest.mark.parametrize(
        "uri",
        ["", "   ", "ftp://example.com/file", "not a url", "https://"],
    )
    def test_invalid_uri_rejected(self, uri: str) -> None:
        """Test that empty and non-http(s) URIs are rejected."""
        with pytest.raises(EncodingError):
            render(uri)

    @pytest.mark.unit
    def test_uri_over_max_length_rejected(self) -> None:
        """Test the configurable length limit."""
        uri = "https://pay.example.com/" + "a" * 100
        with pytest.raises(EncodingError, match="longer than 50"):
            render(uri, max_length=50)

    @pytest.mark.unit
    def test_uri_too_large_for_symbol(self) -> None:
        """Test that data beyond QR capacity is an EncodingError, not a crash."""
        uri = "https://pay.example.com/" + "a" * 4000
        with pytest.raises(EncodingError, match="does not fit"):
            render(uri, max_length=10000)

    @pytest.mark.unit
    def test_validate_strips_whitespace(self) -> None:
        """Test that surrounding whitespace is removed before encoding."""
        assert validate_payment_uri(f"  {CHECKOUT_URL}\n") == CHECKOUT_URL
