"""
QR Code Generator Module - Library Access Control

This module renders encoded access tokens as QR code images for the member
app and the operator screens. It does not create or inspect token contents;
the token string is embedded verbatim.

Features:
- QR code image generation from an encoded token
- Configurable size, border, colours and error correction
- Base64 PNG output for JSON transport
"""

import base64
import io
import logging
from datetime import datetime, timezone
from typing import Optional

import qrcode
from qrcode.constants import ERROR_CORRECT_L, ERROR_CORRECT_M, ERROR_CORRECT_Q, ERROR_CORRECT_H

ERROR_CORRECTION_LEVELS = {
    'L': ERROR_CORRECT_L,  # ~7% error correction
    'M': ERROR_CORRECT_M,  # ~15% error correction
    'Q': ERROR_CORRECT_Q,  # ~25% error correction
    'H': ERROR_CORRECT_H,  # ~30% error correction
}


class QRGenerator:
    """
    QR code renderer for access tokens.
    """

    def __init__(self, box_size: int = 10, border: int = 2, error_correction: str = 'M',
                 fill_color: str = '#000000', back_color: str = '#FFFFFF'):
        """Initialize the QR code generator with default settings."""
        self.logger = logging.getLogger(__name__)

        if error_correction not in ERROR_CORRECTION_LEVELS:
            raise ValueError(f"Unknown error correction level: {error_correction}")

        # Default QR code settings
        self.default_settings = {
            'version': None,  # Let qrcode pick the smallest version that fits
            'error_correction': ERROR_CORRECTION_LEVELS[error_correction],
            'box_size': box_size,
            'border': border,
            'fill_color': fill_color,
            'back_color': back_color
        }

    @classmethod
    def from_config(cls, settings) -> 'QRGenerator':
        return cls(
            box_size=settings.get('QR_CODE_SIZE', 10),
            border=settings.get('QR_CODE_BORDER', 2),
            error_correction=settings.get('QR_CODE_ERROR_CORRECT', 'M'),
            fill_color=settings.get('QR_CODE_FILL_COLOR', '#000000'),
            back_color=settings.get('QR_CODE_BACK_COLOR', '#FFFFFF'),
        )

    def generate_token_qr_code(self, token: str, user_id: str,
                               custom_settings: Optional[dict] = None) -> dict:
        """
        Generate a QR code image carrying an encoded access token.

        Args:
            token (str): Encoded access token
            user_id (str): Token holder, used for the filename
            custom_settings (dict): Overrides for the default settings

        Returns:
            dict: Generation result with base64 PNG data
        """
        settings = self.default_settings.copy()
        if custom_settings:
            settings.update(custom_settings)

        qr = qrcode.QRCode(
            version=settings['version'],
            error_correction=settings['error_correction'],
            box_size=settings['box_size'],
            border=settings['border']
        )
        qr.add_data(token)
        qr.make(fit=True)

        img = qr.make_image(
            fill_color=settings['fill_color'],
            back_color=settings['back_color']
        )

        # Convert image to base64 string
        buffer = io.BytesIO()
        img.save(buffer, format='PNG')
        img_base64 = base64.b64encode(buffer.getvalue()).decode()

        generated_at = datetime.now(timezone.utc)
        safe_user = ''.join(ch if ch.isalnum() or ch in '-_' else '_' for ch in user_id)

        self.logger.info(f"QR code generated for user {user_id}")
        return {
            'success': True,
            'qr_data': token,
            'image_base64': img_base64,
            'image_size': img.size,
            'filename': f"qr_{safe_user}_{generated_at.strftime('%Y%m%d%H%M%S')}.png",
            'user_id': user_id,
            'generated_at': generated_at.isoformat()
        }
