"""
Rendering of interpretation results into cli or markdown report text.

Reports are composed from a small set of primitives (heading, emphasis,
section break, list item, key/value line and table rows). Each output format
provides its own primitives in a `FormatTable`, registered in `FORMAT_TABLES`;
adding a format only requires a new table.

Every report follows the same order:

1.  Header: title, analysis metadata, token usage and timing.
2.  One subsection per component, in component order.
3.  An optional supplementary section (factor correlations for factor
    analysis, fit statistics for mixtures), omitted when there is nothing
    to show.
4.  A diagnostics section listing data-quality and parse warnings, omitted
    when there are none.

`render_html` converts a markdown report to HTML with the `markdown` package.
"""

import logging
import textwrap
from dataclasses import dataclass
from typing import Callable, Dict, List, Optional, Union

import markdown
import numpy as np

from . import constants
from .config import OutputArgs
from .exceptions import ParameterValidationError
from .models import FactorAnalysisData, Interpretation, MixtureAnalysisData
from .prompts import format_loading

logger = logging.getLogger(__name__)


# =============================================================================
# FORMAT TABLES
# =============================================================================
@dataclass(frozen=True)
class FormatTable:
    """
    Primitive renderers of one output format.

    Attributes:
        heading: (text, level, width) -> heading text.
        emphasis: text -> emphasized text.
        section_break: width -> separator line.
        list_item: text -> bullet line.
        key_value: (key, value) -> labelled line.
        table_header: cells -> header row(s).
        table_row: cells -> one table row.
        wrap: Whether paragraphs are wrapped at the configured line length.
    """

    heading: Callable[[str, int, int], str]
    emphasis: Callable[[str], str]
    section_break: Callable[[int], str]
    list_item: Callable[[str], str]
    key_value: Callable[[str, str], str]
    table_header: Callable[[List[str]], str]
    table_row: Callable[[List[str]], str]
    wrap: bool = False


def _md_table_row(cells: List[str]) -> str:
    return "| " + " | ".join(c.replace("|", "\\|") for c in cells) + " |"


def _md_table_header(cells: List[str]) -> str:
    return _md_table_row(cells) + "\n|" + "|".join("---" for _ in cells) + "|"


def _cli_heading(text: str, level: int, width: int) -> str:
    if level <= 1:
        return f"{text.upper()}\n{'=' * width}"
    if level == 2:
        return f"{text}\n{'-' * min(width, len(text))}"
    return text


def _cli_table_row(cells: List[str]) -> str:
    first, *rest = cells
    # Pad to fixed columns but keep a space after overlong cells.
    middle = "".join(c.ljust(8) + " " for c in rest[:-1])
    return "  " + first.ljust(13) + " " + middle + (rest[-1] if rest else "")


def _cli_table_header(cells: List[str]) -> str:
    row = _cli_table_row(cells)
    return row + "\n  " + "-" * (len(row) - 2)


MARKDOWN_TABLE = FormatTable(
    heading=lambda text, level, width: f"{'#' * min(level, 6)} {text}",
    emphasis=lambda text: f"**{text}**",
    section_break=lambda width: "---",
    list_item=lambda text: f"- {text}",
    key_value=lambda key, value: f"**{key}:** {value}  ",
    table_header=_md_table_header,
    table_row=_md_table_row,
)

CLI_TABLE = FormatTable(
    heading=_cli_heading,
    emphasis=lambda text: text,
    section_break=lambda width: "-" * width,
    list_item=lambda text: f"• {text}",
    key_value=lambda key, value: f"{key}: {value}",
    table_header=_cli_table_header,
    table_row=_cli_table_row,
    wrap=True,
)

FORMAT_TABLES: Dict[str, FormatTable] = {
    "markdown": MARKDOWN_TABLE,
    "cli": CLI_TABLE,
}


class ReportWriter:
    """Accumulates report blocks using the primitives of one format table."""

    def __init__(self, table: FormatTable, output_args: OutputArgs):
        self.format_table = table
        self.width = output_args.max_line_length
        self.base_level = output_args.heading_level
        self.blocks: List[str] = []

    def _wrap(self, text: str, indent: str = "") -> str:
        if not self.format_table.wrap:
            return text
        return textwrap.fill(
            text, width=self.width, subsequent_indent=indent, break_long_words=False
        )

    def heading(self, text: str, depth: int = 0) -> None:
        self.blocks.append(self.format_table.heading(text, self.base_level + depth, self.width))

    def paragraph(self, text: str) -> None:
        self.blocks.append(self._wrap(text))

    def key_values(self, pairs: List[tuple]) -> None:
        self.blocks.append(
            "\n".join(self._wrap(self.format_table.key_value(k, v), "  ") for k, v in pairs)
        )

    def bullets(self, items: List[str]) -> None:
        self.blocks.append(
            "\n".join(self._wrap(self.format_table.list_item(item), "  ") for item in items)
        )

    def table(self, header: List[str], rows: List[List[str]]) -> None:
        lines = [self.format_table.table_header(header)]
        lines.extend(self.format_table.table_row(row) for row in rows)
        self.blocks.append("\n".join(lines))

    def section_break(self) -> None:
        self.blocks.append(self.format_table.section_break(self.width))

    def render(self) -> str:
        return "\n\n".join(b for b in self.blocks if b) + "\n"


# =============================================================================
# SHARED SECTIONS
# =============================================================================
def _header(writer: ReportWriter, interpretation: Interpretation, output_args: OutputArgs, title: str) -> None:
    session = interpretation.session
    data = interpretation.analysis_data
    if not output_args.suppress_heading:
        writer.heading(title)
    pairs = [
        ("Analysis", constants.ANALYSIS_DISPLAY_NAMES[data.analysis_type]),
        (
            "Components",
            f"{data.n_components} {data.component_kind.lower()}s, {data.n_variables} variables",
        ),
        (
            "LLM",
            f"{session.provider or 'custom'} / {interpretation.llm_model or session.model or 'default'}",
        ),
        (
            "Tokens",
            f"input {interpretation.input_tokens}, output {interpretation.output_tokens}",
        ),
        ("Elapsed time", f"{interpretation.elapsed_time:.2f} s"),
    ]
    writer.key_values(pairs)


def _diagnostics_section(writer: ReportWriter, interpretation: Interpretation) -> None:
    items = list(interpretation.diagnostics.warnings) + list(interpretation.parsed.warnings)
    if not items:
        return
    writer.heading("Diagnostics", 1)
    writer.bullets(items)


# =============================================================================
# FACTOR ANALYSIS REPORT
# =============================================================================
def _fa_report(interpretation: Interpretation, writer: ReportWriter, output_args: OutputArgs) -> None:
    data: FactorAnalysisData = interpretation.analysis_data
    parsed = interpretation.parsed
    _header(writer, interpretation, output_args, "Factor Analysis Interpretation")

    names = []
    for i, cid in enumerate(data.component_ids, start=1):
        share = data.factor_summaries[cid].variance_explained * 100
        names.append(f"{writer.format_table.emphasis(f'Factor {i}')} ({share:.1f}%): {parsed[cid].name}")
    writer.bullets(names)
    total = sum(s.variance_explained for s in data.factor_summaries.values()) * 100
    writer.key_values([("Total variance explained", f"{total:.1f}%")])

    for i, cid in enumerate(data.component_ids, start=1):
        summary = data.factor_summaries[cid]
        writer.section_break()
        writer.heading(f"Factor {i}: {parsed[cid].name}", 1)
        pairs = [
            ("Variance explained", f"{summary.variance_explained * 100:.1f}%"),
            ("Significant loadings", str(0 if summary.used_emergency_rule else len(summary.indicators))),
        ]
        if summary.status == constants.STATUS_EMERGENCY:
            pairs.append(
                (
                    "WARNING",
                    f"No loading reaches the cutoff of {data.cutoff}; the top "
                    f"{len(summary.indicators)} variables were used (emergency rule).",
                )
            )
        elif summary.status == constants.STATUS_UNDEFINED:
            pairs.append(("WARNING", f"No loading reaches the cutoff of {data.cutoff}; factor is undefined."))
        writer.key_values(pairs)
        writer.paragraph(parsed[cid].interpretation)
        if not summary.indicators.empty:
            writer.table(
                ["Variable", "Loading", "Description"],
                [
                    [row.variable, format_loading(row.loading), row.description]
                    for row in summary.indicators.itertuples(index=False)
                ],
            )

    phi = data.factor_correlations
    if phi is not None and data.n_components > 1:
        writer.section_break()
        writer.heading("Factor Correlations", 1)
        writer.table(
            [""] + list(data.component_ids),
            [
                [cid] + [format_loading(phi.loc[cid, other], digits=2) for other in data.component_ids]
                for cid in data.component_ids
            ],
        )


# =============================================================================
# GAUSSIAN MIXTURE REPORT
# =============================================================================
def _gm_report(interpretation: Interpretation, writer: ReportWriter, output_args: OutputArgs) -> None:
    data: MixtureAnalysisData = interpretation.analysis_data
    parsed = interpretation.parsed
    info = interpretation.diagnostics.info
    _header(writer, interpretation, output_args, "Gaussian Mixture Interpretation")

    writer.bullets(
        [
            f"{writer.format_table.emphasis(f'Cluster {i}')} ({data.proportions[i - 1] * 100:.1f}%): "
            f"{parsed[cid].name}"
            for i, cid in enumerate(data.component_ids, start=1)
        ]
    )

    sizes = data.cluster_sizes()
    uncertainty = data.average_uncertainty()
    distinguishing = info.get("distinguishing_variables", {})
    for i, cid in enumerate(data.component_ids):
        writer.section_break()
        writer.heading(f"Cluster {i + 1}: {parsed[cid].name}", 1)
        size = f"{data.proportions[i] * 100:.1f}%"
        if sizes is not None:
            size += f" (n = {sizes[i]:.0f})"
        pairs = [("Size", size)]
        if uncertainty is not None and not np.isnan(uncertainty[i]):
            pairs.append(("Average uncertainty", f"{uncertainty[i]:.3f}"))
        if distinguishing.get(cid):
            pairs.append(("Distinguishing variables", ", ".join(distinguishing[cid])))
        writer.key_values(pairs)
        writer.paragraph(parsed[cid].interpretation)

    statistics = info.get("statistics", {})
    notes = info.get("notes", [])
    fit_rows = [(k, str(v)) for k, v in statistics.items() if k != "n_clusters"]
    if fit_rows or notes:
        writer.section_break()
        writer.heading("Model Fit", 1)
        if fit_rows:
            writer.key_values(fit_rows)
        if notes:
            writer.bullets(notes)


REPORT_BUILDERS: Dict[str, Callable[[Interpretation, ReportWriter, OutputArgs], None]] = {
    constants.FA: _fa_report,
    constants.GM: _gm_report,
}


# =============================================================================
# ENTRY POINTS
# =============================================================================
def build_report(interpretation: Interpretation, output_args: Optional[OutputArgs] = None) -> str:
    """
    Renders an interpretation as report text.

    Args:
        interpretation: The interpretation result.
        output_args: Output settings; `format` selects the format table.

    Returns:
        The report text.

    Raises:
        ParameterValidationError: If the format or analysis type is unknown.
    """
    output_args = output_args or OutputArgs()
    table = FORMAT_TABLES.get(output_args.format)
    if table is None:
        raise ParameterValidationError(f"Unknown report format '{output_args.format}'.")
    builder = REPORT_BUILDERS.get(interpretation.analysis_type)
    if builder is None:
        raise ParameterValidationError(
            f"No report builder for analysis type '{interpretation.analysis_type}'."
        )
    logger.debug(f"Rendering {interpretation.analysis_type} report in '{output_args.format}' format.")
    writer = ReportWriter(table, output_args)
    builder(interpretation, writer, output_args)
    _diagnostics_section(writer, interpretation)
    return writer.render()


def render_html(report: Union[str, Interpretation], output_args: Optional[OutputArgs] = None) -> str:
    """
    Converts a markdown report to an HTML fragment.

    An `Interpretation` is first rendered in markdown format with the other
    output settings of `output_args`.
    """
    if isinstance(report, Interpretation):
        settings = (output_args or OutputArgs()).model_copy(update={"format": "markdown"})
        report = build_report(report, settings)
    return markdown.markdown(report, extensions=["tables", "fenced_code", "sane_lists", "nl2br"])
