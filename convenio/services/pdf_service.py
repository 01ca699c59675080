import io
import logging
import uuid
from datetime import datetime
from fastapi.concurrency import run_in_threadpool
from reportlab.lib import colors
from reportlab.lib.pagesizes import A4
from reportlab.lib.styles import getSampleStyleSheet, ParagraphStyle
from reportlab.lib.units import inch
from reportlab.lib.utils import ImageReader, open_for_read
from reportlab.platypus import SimpleDocTemplate, Paragraph, Spacer, Table, TableStyle, HRFlowable, Image
from xml.sax.saxutils import escape
from convenio.services.storage import storage_service

logger = logging.getLogger(__name__)

CLINIC_NAME = "Convênio Saúde"
SIGNATURE_BOX = (2.2 * inch, 0.8 * inch)

DOCUMENT_TITLES = {
    "medical_record": "PRONTUÁRIO",
    "certificate": "ATESTADO",
    "prescription": "RECEITUÁRIO",
    "exam_request": "SOLICITAÇÃO DE EXAMES",
    "declaration": "DECLARAÇÃO DE COMPARECIMENTO",
    "referral": "ENCAMINHAMENTO",
}

RECORD_SECTIONS = (
    ("chief_complaint", "Queixa principal"),
    ("history_present_illness", "História da doença atual"),
    ("past_medical_history", "História patológica pregressa"),
    ("medications", "Medicamentos em uso"),
    ("allergies", "Alergias"),
    ("physical_examination", "Exame físico"),
    ("diagnosis", "Diagnóstico"),
    ("treatment_plan", "Plano de tratamento"),
    ("notes", "Observações"),
)


def _get_base_elements(title):
    """Cabeçalho padrão de todos os PDFs."""
    styles = getSampleStyleSheet()
    elements = []

    header_style = ParagraphStyle(
        'HeaderStyle',
        parent=styles['Heading1'],
        fontSize=18,
        textColor=colors.HexColor("#0E7C7B"),
        alignment=1,  # Center
        spaceAfter=12
    )

    elements.append(Paragraph(CLINIC_NAME.upper(), header_style))
    elements.append(Paragraph(title, styles['Heading2']))
    elements.append(HRFlowable(width="100%", thickness=1, color=colors.grey, spaceBefore=4, spaceAfter=20))

    return elements, styles


def _text(value) -> str:
    return escape(str(value)).replace("\n", "<br/>")


def _patient_box(inputs, styles):
    info_data = [[
        Paragraph(f"<b>Paciente:</b> {_text(inputs.get('patient_name') or '-')}", styles['Normal']),
        Paragraph(f"<b>Data:</b> {_text(inputs.get('date') or datetime.now().strftime('%d/%m/%Y'))}", styles['Normal']),
    ]]
    return Table(info_data, colWidths=[3.5 * inch, 2.5 * inch])


def _signature_image(url):
    """The uploaded signature scaled to fit above the line, or None when it cannot be fetched."""
    try:
        data = open_for_read(url).read()
        width, height = ImageReader(io.BytesIO(data)).getSize()
    except Exception as e:
        logger.warning("Signature %s could not be loaded: %s", url, e)
        return None
    scale = min(SIGNATURE_BOX[0] / width, SIGNATURE_BOX[1] / height)
    return Image(io.BytesIO(data), width=width * scale, height=height * scale)


def _signature(inputs, styles):
    image = _signature_image(inputs["signature_url"]) if inputs.get("signature_url") else None
    if image is not None:
        elements = [Spacer(1, 12), image]
    else:
        elements = [Spacer(1, 48)]
    elements.append(HRFlowable(width="50%", thickness=0.5, color=colors.black))
    name = inputs.get("professional_name") or ""
    registry = inputs.get("professional_registry")
    line = f"{_text(name)}<br/>{_text(registry)}" if registry else _text(name)
    elements.append(Paragraph(line, ParagraphStyle('Sig', parent=styles['Normal'], alignment=1)))
    return elements


def _vital_signs_table(vital_signs):
    data = [["SINAL VITAL", "VALOR"]]
    for name, value in vital_signs.items():
        data.append([str(name).replace("_", " ").capitalize(), str(value)])
    t = Table(data, colWidths=[3 * inch, 3 * inch])
    t.setStyle(TableStyle([
        ('BACKGROUND', (0, 0), (-1, 0), colors.HexColor("#0E7C7B")),
        ('TEXTCOLOR', (0, 0), (-1, 0), colors.whitesmoke),
        ('FONTNAME', (0, 0), (-1, 0), 'Helvetica-Bold'),
        ('GRID', (0, 0), (-1, -1), 0.5, colors.grey),
    ]))
    return t


def generate_document_pdf(kind: str, inputs: dict) -> bytes:
    buffer = io.BytesIO()
    doc = SimpleDocTemplate(buffer, pagesize=A4)
    title = inputs.get("title") or DOCUMENT_TITLES.get(kind, "DOCUMENTO")
    elements, styles = _get_base_elements(title.upper())
    elements.append(_patient_box(inputs, styles))
    elements.append(Spacer(1, 18))

    if kind == "medical_record":
        for key, label in RECORD_SECTIONS:
            if inputs.get(key):
                elements.append(Paragraph(f"<b>{label}</b>", styles['Heading4']))
                elements.append(Paragraph(_text(inputs[key]), styles['Normal']))
                elements.append(Spacer(1, 8))
        if inputs.get("vital_signs"):
            elements.append(Paragraph("<b>Sinais vitais</b>", styles['Heading4']))
            elements.append(_vital_signs_table(inputs["vital_signs"]))
    else:
        elements.append(Paragraph(_text(inputs.get("content") or ""), styles['Normal']))

    elements.extend(_signature(inputs, styles))
    doc.build(elements)
    return buffer.getvalue()


class PdfDocumentRenderer:
    """Renders PDFs with reportlab and publishes them in the storage bucket."""

    def __init__(self, storage=storage_service):
        self.storage = storage

    async def render(self, kind: str, inputs: dict) -> dict:
        pdf = await run_in_threadpool(generate_document_pdf, kind, inputs)
        path = f"documents/{kind}/{uuid.uuid4().hex}.pdf"
        url = await run_in_threadpool(self.storage.upload_file, pdf, path, "application/pdf")
        logger.info("Rendered %s document (%s bytes) to %s", kind, len(pdf), path)
        return {"url": url}


def get_document_renderer() -> PdfDocumentRenderer:
    return PdfDocumentRenderer()
