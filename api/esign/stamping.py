import logging
from datetime import datetime
from io import BytesIO
from typing import Dict, List, Optional

from pypdf import PdfReader, PdfWriter
from reportlab.lib.colors import Color
from reportlab.lib.utils import ImageReader
from reportlab.pdfgen import canvas

from .config import PRODUCT_NAME
from .errors import StampingError
from .utils import b64png_to_bytes

logger = logging.getLogger(__name__)

ACCENT = Color(0.03, 0.81, 0.4)
MUTED = Color(0.5, 0.5, 0.5)


def _overlay_page(width, height, draw_ops):
    buf = BytesIO()
    c = canvas.Canvas(buf, pagesize=(width, height))
    for op in draw_ops:
        t = op.get("type")
        if t == "text":
            c.setFont("Helvetica", op.get("size", 10))
            c.setFillColor(op.get("color", Color(0, 0, 0)))
            c.drawString(op["x"], op["y"], op["text"])
        elif t == "checkbox":
            x, y = op["x"], op["y"]
            c.rect(x, y, 10, 10, stroke=1, fill=0)
            if op.get("checked"):
                c.line(x, y, x+10, y+10); c.line(x, y+10, x+10, y)
        elif t == "signature":
            c.drawImage(ImageReader(BytesIO(op["png"])), op["x"], op["y"], width=op["w"], height=op["h"], mask='auto')
        elif t == "box":
            c.setStrokeColor(ACCENT)
            c.setFillColor(Color(0.98, 0.99, 0.98))
            c.rect(op["x"], op["y"], op["w"], op["h"], stroke=1, fill=1)
    c.showPage()
    c.save()
    return buf.getvalue()


def _field_ops(values: Dict[str, dict], num_pages: int) -> Dict[int, List[dict]]:
    # values: { field_id: {"type", "page", "x", "y", "w", "h", "value"} }
    draw_map: Dict[int, List[dict]] = {}
    for fid, v in values.items():
        t = v.get("type")
        value = v.get("value")
        if not value:
            continue
        p = max(0, min(num_pages - 1, int(v.get("page", 1)) - 1))
        if t in ("text", "date"):
            draw_map.setdefault(p, []).append({"type": "text", "x": v["x"], "y": v["y"], "text": str(value)})
        elif t == "checkbox":
            draw_map.setdefault(p, []).append({"type": "checkbox", "x": v["x"], "y": v["y"], "checked": value == "true"})
        elif t in ("signature", "initials"):
            try:
                png = b64png_to_bytes(value)
                ImageReader(BytesIO(png)).getSize()
            except Exception as exc:
                # an undecodable image must not block the remaining fields
                logger.warning("skipping signature image for field %s: %s", fid, exc)
                continue
            draw_map.setdefault(p, []).append({
                "type": "signature",
                "x": v["x"],
                "y": v["y"],
                "w": v.get("w") or 180.0,
                "h": v.get("h") or 80.0,
                "png": png,
            })
    return draw_map


def _visual_signature_ops(width: float, signer_names: List[str], signed_at: datetime, verify_url: str) -> List[dict]:
    x, y, w = 40, 25, width - 80
    return [
        {"type": "box", "x": x, "y": y, "w": w, "h": 55},
        {"type": "text", "x": x + 10, "y": y + 38, "size": 9, "text": f"Electronically signed via {PRODUCT_NAME}"},
        {"type": "text", "x": x + 10, "y": y + 26, "size": 8, "color": MUTED, "text": f"Signers: {', '.join(signer_names)}"[:110]},
        {"type": "text", "x": x + 10, "y": y + 14, "size": 8, "color": MUTED, "text": f"Date: {signed_at:%Y-%m-%d %H:%M:%S} UTC"},
        {"type": "text", "x": x + 10, "y": y + 3, "size": 7, "color": MUTED, "text": f"Verify: {verify_url}"},
    ]


def stamp_pdf(
    original_pdf_bytes: bytes,
    values: Dict[str, dict],
    signed_at: datetime,
    signer_names: Optional[List[str]] = None,
    verify_url: Optional[str] = None,
) -> bytes:
    """Draw field values onto their pages and a signing footer on the last page.

    When ``signer_names`` is given, a visual signature box (names, timestamp,
    verification URL) replaces the footer line.

    Raises:
        StampingError: if the document cannot be read or written.
    """
    try:
        reader = PdfReader(BytesIO(original_pdf_bytes))
        writer = PdfWriter()
        num_pages = len(reader.pages)
        if num_pages == 0:
            raise StampingError("document has no pages")
        for p in reader.pages:
            writer.add_page(p)

        draw_map = _field_ops(values, num_pages)
        last = num_pages - 1
        last_width = float(reader.pages[last].mediabox.width)
        if signer_names:
            draw_map.setdefault(last, []).extend(
                _visual_signature_ops(last_width, signer_names, signed_at, verify_url or "")
            )
        else:
            draw_map.setdefault(last, []).append({
                "type": "text", "x": 50, "y": 12, "size": 8, "color": MUTED,
                "text": f"Electronically signed via {PRODUCT_NAME} - {signed_at:%Y-%m-%d}",
            })

        for pidx, ops in draw_map.items():
            page = reader.pages[pidx]
            w = float(page.mediabox.width); h = float(page.mediabox.height)
            overlay_reader = PdfReader(BytesIO(_overlay_page(w, h, ops)))
            writer.pages[pidx].merge_page(overlay_reader.pages[0])

        writer.add_metadata({"/Producer": PRODUCT_NAME, "/Creator": PRODUCT_NAME})
        out = BytesIO(); writer.write(out)
        return out.getvalue()
    except StampingError:
        raise
    except Exception as exc:
        raise StampingError(f"could not stamp document: {exc}") from exc
