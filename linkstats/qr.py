import base64
import io
import logging
from typing import Optional

import qrcode

logger = logging.getLogger(__name__)


def make_qr_data_url(data: str, box_size: int = 10, border: int = 2) -> str:
    """QR-код в виде PNG data URL для встраивания в страницу"""
    qr = qrcode.QRCode(
        version=None,
        error_correction=qrcode.constants.ERROR_CORRECT_H,
        box_size=box_size,
        border=border,
    )
    qr.add_data(data)
    qr.make(fit=True)
    img = qr.make_image(fill_color="black", back_color="white")

    buffer = io.BytesIO()
    img.save(buffer, format="PNG")
    encoded = base64.b64encode(buffer.getvalue()).decode("utf-8")
    return f"data:image/png;base64,{encoded}"


def qr_for_url(url: str) -> Optional[str]:
    """QR-код короткой ссылки; ошибка генерации не мешает созданию ссылки"""
    try:
        return make_qr_data_url(url)
    except Exception as e:
        logger.error(f"QR code generation error for {url}: {e}")
        return None
