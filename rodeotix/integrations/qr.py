import io
import json
from typing import Any, Dict

import qrcode


def render_qr_png(data: str) -> bytes:
    qr = qrcode.QRCode(version=None, box_size=10, border=2)
    qr.add_data(data)
    qr.make(fit=True)
    img = qr.make_image(fill_color="black", back_color="white")
    buf = io.BytesIO()
    img.save(buf, format="PNG")
    return buf.getvalue()


def qr_payload(kind: str, fields: Dict[str, Any]) -> str:
    # what the gate / bar scanners decode
    return json.dumps({"kind": kind, **fields}, separators=(",", ":"))
