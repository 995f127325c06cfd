from __future__ import annotations

import logging
from importlib import metadata
from pathlib import Path

import matplotlib

matplotlib.use("Agg")  # headless, deterministic output
import matplotlib.pyplot as plt
from matplotlib.patches import FancyArrowPatch, Polygon

from .project_models import FlatRenderRow

logger = logging.getLogger(__name__)

ROW_HEIGHT = 0.6
CRITICAL_COLOR = "#d62728"
NORMAL_COLOR = "#1f77b4"
SLACK_COLOR = "#7f7f7f"
MILESTONE_COLOR = "#444444"
INDENT_STEP = 0.03  # label axis fraction per WBS level
TIMELINE_PAD_FRAC = 0.05
TITLE_FONT = 14
LABEL_FONT = 10
FOOTER_FONT = 8
TICK_FONT = 9


def render_gantt(rows: list[FlatRenderRow], out_path: str, title: str, unit: str = "hours") -> None:
    """
    Render a static SVG Gantt chart of a CPM schedule to `out_path`.

    - The x axis is the relative timeline starting at 0 (no calendar).
    - Critical tasks are drawn in red; total float trails each bar as a whisker.
    - Milestones without a position only emit their label.
    """

    if not rows:
        raise ValueError("rows must not be empty")

    horizon = max(
        [(row.finish or 0) + row.slack for row in rows if row.finish is not None] + [1.0]
    )
    pad = horizon * TIMELINE_PAD_FRAC

    fig_height = max(3.0, ROW_HEIGHT * len(rows) + 2.0)
    fig = plt.figure(figsize=(14.0, fig_height))
    gs = fig.add_gridspec(1, 2, width_ratios=[1.2, 4.0], wspace=0.05, left=0.04, right=0.98, top=0.88, bottom=0.08)
    label_ax = fig.add_subplot(gs[0, 0])
    ax = fig.add_subplot(gs[0, 1], sharey=label_ax)

    ax.set_ylim(-1, len(rows))
    ax.invert_yaxis()
    ax.set_xlim(-pad, horizon + pad)
    ax.xaxis.tick_top()
    ax.grid(True, axis="x", linestyle="--", alpha=0.4)
    ax.tick_params(axis="x", labelsize=TICK_FONT)
    ax.set_yticks([])
    ax.set_xlabel(unit)

    label_ax.set_ylim(-1, len(rows))
    label_ax.invert_yaxis()
    label_ax.set_xlim(0, 1)
    label_ax.axis("off")

    fig.suptitle(title, x=0.5, fontsize=TITLE_FONT, y=0.98)
    fig.text(
        0.99,
        0.01,
        f"project-scheduler v{_tool_version()}",
        ha="right",
        va="bottom",
        fontsize=FOOTER_FONT,
        alpha=0.8,
    )

    positions: dict[str, tuple[float, float, float]] = {}  # id -> (x_start, x_finish, y)

    for idx, row in enumerate(rows):
        y = idx
        label_ax.text(
            0.02 + INDENT_STEP * row.indent,
            y,
            row.label,
            ha="left",
            va="center",
            fontsize=LABEL_FONT,
            fontweight="bold" if row.is_critical else "normal",
            transform=label_ax.transData,
        )

        if row.node_type == "bar" and row.start is not None and row.finish is not None:
            width = row.finish - row.start
            ax.barh(
                y,
                width=width,
                left=row.start,
                height=ROW_HEIGHT,
                color=CRITICAL_COLOR if row.is_critical else NORMAL_COLOR,
                edgecolor="black",
                linewidth=0.5,
            )
            if width == 0:
                # Zero-effort tasks still need a visible marker.
                ax.plot([row.start], [y], marker="|", color="black", markersize=10)
            if row.slack > 0:
                ax.plot([row.finish, row.finish + row.slack], [y, y], color=SLACK_COLOR, linewidth=1.5)
                ax.plot([row.finish + row.slack] * 2, [y - 0.15, y + 0.15], color=SLACK_COLOR, linewidth=1.5)
            positions[row.node_id] = (row.start, row.finish, y)

        elif row.node_type == "lozenge" and row.start is not None:
            half_width = horizon * 0.008
            half_height = ROW_HEIGHT / 1.5
            diamond = [
                (row.start - half_width, y),
                (row.start, y - half_height),
                (row.start + half_width, y),
                (row.start, y + half_height),
            ]
            ax.add_patch(Polygon(diamond, closed=True, facecolor=MILESTONE_COLOR, edgecolor="black"))
            positions[row.node_id] = (row.start, row.start, y)

    _draw_dependencies(ax, rows, positions)

    Path(out_path).parent.mkdir(parents=True, exist_ok=True)
    fig.savefig(out_path, format="svg", bbox_inches="tight")
    plt.close(fig)
    logger.info("Rendered %d rows to %s", len(rows), out_path)


def _draw_dependencies(ax, rows: list[FlatRenderRow], positions: dict[str, tuple[float, float, float]]) -> None:
    for row in rows:
        target = positions.get(row.node_id)
        if target is None:
            continue
        for dep_id in row.depends_on:
            source = positions.get(dep_id)
            if source is None:
                continue
            arrow = FancyArrowPatch(
                (source[1], source[2]),
                (target[0], target[2]),
                connectionstyle="arc3,rad=0.0",
                arrowstyle="-|>",
                mutation_scale=8,
                color="#555555",
                linewidth=0.7,
                alpha=0.7,
                zorder=1,
            )
            ax.add_patch(arrow)


def _tool_version() -> str:
    try:
        return metadata.version("project-scheduler")
    except metadata.PackageNotFoundError:
        return "0.0.0"
