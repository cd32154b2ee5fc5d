from __future__ import annotations

from io import BytesIO
from pathlib import Path

from pypdf import PdfReader, PdfWriter, Transformation
from pypdf.errors import PyPdfError

from return_mailer.domain.errors import ComposeError
from return_mailer.domain.models import ComposedDocument, LabelPlacement


LETTER_WIDTH = 612.0
LETTER_HEIGHT = 792.0
LABEL_TARGET_WIDTH = 420.0
LABEL_TARGET_HEIGHT = 600.0


def compute_label_placement(
    label_width: float,
    label_height: float,
    *,
    page_width: float = LETTER_WIDTH,
    page_height: float = LETTER_HEIGHT,
    target_width: float = LABEL_TARGET_WIDTH,
    target_height: float = LABEL_TARGET_HEIGHT,
) -> LabelPlacement:
    """Scale the label uniformly into the target box and center it on the page."""
    if label_width <= 0 or label_height <= 0:
        raise ComposeError(
            f"Label page has invalid size {label_width}x{label_height}",
            kind=ComposeError.INVALID_LABEL_DOCUMENT,
        )
    scale = min(target_width / label_width, target_height / label_height)
    draw_width = label_width * scale
    draw_height = label_height * scale
    return LabelPlacement(
        scale=scale,
        draw_width=draw_width,
        draw_height=draw_height,
        x=(page_width - draw_width) / 2,
        y=(page_height - draw_height) / 2,
    )


def read_instructions(path: str | Path | None) -> bytes | None:
    if not path:
        return None
    instructions = Path(path)
    if not instructions.is_file():
        return None
    return instructions.read_bytes()


def _open_pdf(data: bytes, *, kind: str, what: str) -> PdfReader:
    try:
        reader = PdfReader(BytesIO(data))
        page_count = len(reader.pages)
    except (PyPdfError, ValueError, KeyError, TypeError) as exc:
        raise ComposeError(f"{what} is not a readable PDF: {exc}", kind=kind) from exc
    if page_count < 1:
        raise ComposeError(f"{what} has no pages", kind=kind)
    return reader


class DocumentComposer:
    def compose(self, label_bytes: bytes, instructions_bytes: bytes | None = None) -> ComposedDocument:
        writer = PdfWriter()

        if instructions_bytes:
            instructions = _open_pdf(
                instructions_bytes,
                kind=ComposeError.INVALID_INSTRUCTIONS_DOCUMENT,
                what="Instructions document",
            )
            for page in instructions.pages:
                writer.add_page(page)

        label = _open_pdf(label_bytes, kind=ComposeError.INVALID_LABEL_DOCUMENT, what="Label document")
        label_page = label.pages[0]
        box = label_page.mediabox
        placement = compute_label_placement(float(box.width), float(box.height))

        sheet = writer.add_blank_page(width=LETTER_WIDTH, height=LETTER_HEIGHT)
        transform = (
            Transformation()
            .translate(-float(box.left), -float(box.bottom))
            .scale(placement.scale, placement.scale)
            .translate(placement.x, placement.y)
        )
        sheet.merge_transformed_page(label_page, transform)

        buffer = BytesIO()
        writer.write(buffer)
        return ComposedDocument(
            content=buffer.getvalue(),
            page_count=len(writer.pages),
            placement=placement,
        )
