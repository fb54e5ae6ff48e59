"""Client report PDF generator."""

import io
from datetime import datetime
from xml.sax.saxutils import escape

from reportlab.lib import colors
from reportlab.lib.enums import TA_CENTER
from reportlab.lib.pagesizes import letter
from reportlab.lib.styles import ParagraphStyle, getSampleStyleSheet
from reportlab.lib.units import inch
from reportlab.platypus import (
    HRFlowable,
    Paragraph,
    SimpleDocTemplate,
    Spacer,
    Table,
    TableStyle,
)

from client_reporting.schemas.reports import ReportMetrics

BRAND_COLOR = colors.HexColor('#1e3a5f')
MUTED_COLOR = colors.HexColor('#6b7280')
RULE_COLOR = colors.HexColor('#e5e7eb')


class ReportPdfGenerator:
    """Renders a branded analytics report for one client."""

    def __init__(self):
        self.styles = getSampleStyleSheet()
        self._setup_custom_styles()

    def _setup_custom_styles(self):
        """Setup custom paragraph styles."""
        self.styles.add(ParagraphStyle(
            name='ReportTitle',
            parent=self.styles['Heading1'],
            fontSize=20,
            alignment=TA_CENTER,
            textColor=BRAND_COLOR,
            spaceAfter=6,
        ))
        self.styles.add(ParagraphStyle(
            name='ReportSubtitle',
            parent=self.styles['Normal'],
            fontSize=11,
            alignment=TA_CENTER,
            textColor=MUTED_COLOR,
            spaceAfter=16,
        ))
        self.styles.add(ParagraphStyle(
            name='SectionHeader',
            parent=self.styles['Heading2'],
            fontSize=14,
            textColor=BRAND_COLOR,
            spaceBefore=15,
            spaceAfter=10,
        ))
        self.styles.add(ParagraphStyle(
            name='Footer',
            parent=self.styles['Normal'],
            fontSize=8,
            textColor=colors.HexColor('#9ca3af'),
            alignment=TA_CENTER,
        ))

    def generate(
        self,
        agency_name: str,
        client_name: str,
        metrics: ReportMetrics | None,
        generated_at: datetime,
    ) -> bytes:
        """Render the report and return the PDF bytes."""
        buffer = io.BytesIO()
        doc = SimpleDocTemplate(
            buffer,
            pagesize=letter,
            rightMargin=0.75 * inch,
            leftMargin=0.75 * inch,
            topMargin=0.75 * inch,
            bottomMargin=0.75 * inch,
            title=f"{client_name} report",
            author=agency_name,
        )

        story = []
        story.extend(self._build_header(agency_name, client_name, metrics))
        if metrics is None:
            story.append(Paragraph(
                "No analytics data has been uploaded for this period yet.",
                self.styles['Normal'],
            ))
        else:
            story.extend(self._build_summary(metrics))
            story.extend(self._build_top_pages(metrics))
        story.extend(self._build_footer(agency_name, generated_at))

        doc.build(story)
        return buffer.getvalue()

    def _build_header(self, agency_name: str, client_name: str, metrics: ReportMetrics | None) -> list:
        elements = [
            Paragraph(escape(client_name), self.styles['ReportTitle']),
        ]
        if metrics is not None:
            period = f"{metrics.period_start:%b %d, %Y} to {metrics.period_end:%b %d, %Y}"
        else:
            period = "Analytics report"
        elements.append(Paragraph(f"{escape(period)} · prepared by {escape(agency_name)}", self.styles['ReportSubtitle']))
        elements.append(HRFlowable(width="100%", thickness=1, color=RULE_COLOR))
        elements.append(Spacer(1, 10))
        return elements

    def _build_summary(self, metrics: ReportMetrics) -> list:
        elements = [Paragraph("Summary", self.styles['SectionHeader'])]

        data = [
            ["Sessions", "Users", "Pageviews"],
            [f"{metrics.sessions:,}", f"{metrics.users:,}", f"{metrics.pageviews:,}"],
        ]
        table = Table(data, colWidths=[2.3 * inch] * 3)
        table.setStyle(TableStyle([
            ('FONTNAME', (0, 0), (-1, 0), 'Helvetica'),
            ('FONTSIZE', (0, 0), (-1, 0), 9),
            ('TEXTCOLOR', (0, 0), (-1, 0), MUTED_COLOR),
            ('FONTNAME', (0, 1), (-1, 1), 'Helvetica-Bold'),
            ('FONTSIZE', (0, 1), (-1, 1), 18),
            ('TEXTCOLOR', (0, 1), (-1, 1), BRAND_COLOR),
            ('ALIGN', (0, 0), (-1, -1), 'CENTER'),
            ('BOTTOMPADDING', (0, 0), (-1, -1), 8),
            ('BOX', (0, 0), (-1, -1), 0.5, RULE_COLOR),
        ]))
        elements.append(table)
        elements.append(Spacer(1, 15))
        return elements

    def _build_top_pages(self, metrics: ReportMetrics) -> list:
        elements = [Paragraph("Top Pages", self.styles['SectionHeader'])]

        if not metrics.top_pages:
            elements.append(Paragraph("No page data for this period.", self.styles['Normal']))
            return elements

        data = [["Page", "Pageviews"]]
        for page in metrics.top_pages[:10]:
            path = page.path if len(page.path) <= 70 else page.path[:67] + "..."
            data.append([path, f"{page.pageviews:,}"])

        table = Table(data, colWidths=[5.2 * inch, 1.6 * inch])
        table.setStyle(TableStyle([
            ('FONTNAME', (0, 0), (-1, 0), 'Helvetica-Bold'),
            ('FONTNAME', (0, 1), (-1, -1), 'Helvetica'),
            ('FONTSIZE', (0, 0), (-1, -1), 9),
            ('BACKGROUND', (0, 0), (-1, 0), colors.HexColor('#f3f4f6')),
            ('ALIGN', (1, 0), (1, -1), 'RIGHT'),
            ('LINEBELOW', (0, 0), (-1, -1), 0.25, RULE_COLOR),
            ('BOTTOMPADDING', (0, 0), (-1, -1), 5),
            ('TOPPADDING', (0, 0), (-1, -1), 5),
        ]))
        elements.append(table)
        return elements

    def _build_footer(self, agency_name: str, generated_at: datetime) -> list:
        return [
            Spacer(1, 30),
            HRFlowable(width="100%", thickness=0.5, color=RULE_COLOR),
            Spacer(1, 5),
            Paragraph(
                f"Generated {generated_at:%Y-%m-%d %H:%M UTC} by {escape(agency_name)}",
                self.styles['Footer'],
            ),
        ]
