from __future__ import annotations

from dataclasses import dataclass
import json
from pathlib import Path

from .is2 import IS2Result


@dataclass(frozen=True)
class ReportPaths:
    out_dir: Path

    @property
    def result_json(self) -> Path:
        return self.out_dir / "is2_result.json"

    @property
    def report_md(self) -> Path:
        return self.out_dir / "report.md"


def _is_number(v) -> bool:
    try:
        float(str(v))
    except ValueError:
        return False
    return True


def format_table(rows: list[list], headers: list[str]) -> str:
    """Markdown table; columns whose non-empty cells all parse as numbers are right-aligned."""
    if len(headers) == 0:
        raise ValueError("headers must be non-empty")
    cells = [[str(v) for v in r] for r in rows]
    for r in cells:
        if len(r) != len(headers):
            raise ValueError("Row length mismatch.")
    widths = [max([len(h)] + [len(r[c]) for r in cells]) for c, h in enumerate(headers)]
    numeric = [
        any(r[c] for r in cells) and all(_is_number(r[c]) for r in cells if r[c]) for c in range(len(headers))
    ]
    def fmt_row(r):
        return "| " + " | ".join(v.rjust(w) if num else v.ljust(w) for v, w, num in zip(r, widths, numeric, strict=True)) + " |"
    rule = ["-" * (w - 1) + ":" if num else "-" * w for w, num in zip(widths, numeric, strict=True)]
    out = [fmt_row([str(h) for h in headers]), "| " + " | ".join(rule) + " |"]
    out += [fmt_row(r) for r in cells]
    return "\n".join(out)


def is2_summary_markdown(results: dict[str, IS2Result], *, reference: dict[str, float] | None = None) -> str:
    """One row per labelled run: estimate, bootstrap SE, outer ESS and run size."""
    reference = reference or {}
    rows = []
    for label, res in results.items():
        ref = reference.get(label)
        rows.append(
            [
                label,
                f"{res.log_marginal_likelihood:.4f}",
                f"{res.standard_error:.4f}",
                "" if ref is None else f"{ref:.4f}",
                "" if ref is None else f"{res.log_marginal_likelihood - ref:+.4f}",
                f"{res.ess:.1f}",
                str(res.config.is_samples),
                str(res.config.n_particles),
                str(int(res.n_failed.sum())),
            ]
        )
    headers = ["run", "log ML", "SE", "reference", "diff", "ESS", "IS_samples", "n_particles", "failed"]
    return format_table(rows, headers)


def write_report(*, paths: ReportPaths, markdown: str, payload: dict) -> None:
    paths.out_dir.mkdir(parents=True, exist_ok=True)
    paths.report_md.write_text(markdown, encoding="utf-8")
    paths.result_json.write_text(json.dumps(payload, indent=2, sort_keys=True) + "\n", encoding="utf-8")
