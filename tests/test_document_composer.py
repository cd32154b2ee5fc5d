from io import BytesIO

import pytest
from pypdf import PdfReader, PdfWriter

from return_mailer.documents.composer import (
    DocumentComposer,
    compute_label_placement,
    read_instructions,
)
from return_mailer.domain.errors import ComposeError


def _pdf(*sizes: tuple[float, float]) -> bytes:
    writer = PdfWriter()
    for width, height in sizes:
        writer.add_blank_page(width=width, height=height)
    buffer = BytesIO()
    writer.write(buffer)
    return buffer.getvalue()


def test_placement_for_4x6_label_on_letter_page():
    placement = compute_label_placement(288, 432)

    assert placement.scale == pytest.approx(600 / 432)
    assert placement.scale == pytest.approx(1.3888888, rel=1e-6)
    assert placement.draw_width == pytest.approx(400.0)
    assert placement.draw_height == pytest.approx(600.0)
    assert placement.x == pytest.approx(106.0)
    assert placement.y == pytest.approx(96.0)


def test_placement_width_bound_label():
    placement = compute_label_placement(600, 300)

    assert placement.scale == pytest.approx(0.7)
    assert placement.draw_width == pytest.approx(420.0)
    assert placement.draw_height == pytest.approx(210.0)
    assert placement.x == pytest.approx(96.0)
    assert placement.y == pytest.approx(291.0)


def test_placement_rejects_degenerate_page():
    with pytest.raises(ComposeError):
        compute_label_placement(0, 432)


def test_compose_appends_letter_page_after_instructions():
    composed = DocumentComposer().compose(_pdf((288, 432)), _pdf((612, 792), (612, 792)))

    reader = PdfReader(BytesIO(composed.content))
    assert composed.page_count == 3
    assert len(reader.pages) == 3
    last = reader.pages[-1]
    assert float(last.mediabox.width) == pytest.approx(612.0)
    assert float(last.mediabox.height) == pytest.approx(792.0)
    assert composed.placement.x == pytest.approx(106.0)


def test_compose_without_instructions_has_single_page():
    composed = DocumentComposer().compose(_pdf((288, 432)), None)

    assert composed.page_count == 1
    assert len(PdfReader(BytesIO(composed.content)).pages) == 1


def test_compose_layout_is_deterministic():
    composer = DocumentComposer()
    label = _pdf((288, 432))

    first = composer.compose(label)
    second = composer.compose(label)

    assert first.placement == second.placement


def test_compose_uses_first_page_of_multi_page_label():
    composed = DocumentComposer().compose(_pdf((288, 432), (612, 792)))

    assert composed.placement.draw_width == pytest.approx(400.0)


def test_compose_rejects_unreadable_label():
    with pytest.raises(ComposeError) as excinfo:
        DocumentComposer().compose(b"definitely not a pdf")
    assert excinfo.value.kind == ComposeError.INVALID_LABEL_DOCUMENT


def test_compose_rejects_unreadable_instructions():
    with pytest.raises(ComposeError) as excinfo:
        DocumentComposer().compose(_pdf((288, 432)), b"garbage")
    assert excinfo.value.kind == ComposeError.INVALID_INSTRUCTIONS_DOCUMENT


def test_read_instructions_treats_missing_file_as_absent(tmp_path):
    assert read_instructions(None) is None
    assert read_instructions(tmp_path / "missing.pdf") is None

    path = tmp_path / "instructions.pdf"
    path.write_bytes(_pdf((612, 792)))
    assert read_instructions(path) == path.read_bytes()
