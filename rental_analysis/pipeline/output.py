"""JSON output formatter for analysis outcomes.

Example output structure:
{
    "succeeded": true,
    "source": "remote",
    "degraded": false,
    "attempts_made": 1,
    "narrative": "<p>Good quarter</p>",
    "sanitized": true,
    "error": null
}

``error`` is ``{"kind": ..., "message": ...}`` for failed outcomes and for
successful local outcomes that carry a user notice.
"""

import json
from pathlib import Path
from typing import Any, Dict, Optional

from rental_analysis.models.data_models import AnalysisOutcome, DegradedModeSnapshot


class JSONOutputFormatter:
    """Formats analysis outcomes (and optionally degraded-mode state) as JSON."""

    def format(
        self,
        outcome: AnalysisOutcome,
        snapshot: Optional[DegradedModeSnapshot] = None
    ) -> Dict[str, Any]:
        """
        Format an outcome as a JSON-serializable dictionary.

        Args:
            outcome: Result of one analysis request
            snapshot: Degraded-mode state to include under ``degraded_mode``

        Returns:
            Dictionary following the structure in the module docstring
        """
        data = {
            "succeeded": outcome.succeeded,
            "source": outcome.source.value if outcome.source else None,
            "degraded": outcome.degraded,
            "attempts_made": outcome.attempts_made,
            "narrative": outcome.narrative,
            "sanitized": outcome.sanitized,
            "error": self._format_error(outcome),
        }
        if snapshot is not None:
            data["degraded_mode"] = {
                "is_degraded": snapshot.is_degraded,
                "remaining_cooldown_seconds": snapshot.remaining_cooldown_seconds,
                "consecutive_failures": snapshot.consecutive_failures,
            }
        return data

    def _format_error(self, outcome: AnalysisOutcome) -> Optional[Dict[str, Any]]:
        if outcome.error_kind is None and outcome.user_message is None:
            return None
        return {
            "kind": outcome.error_kind.value if outcome.error_kind else None,
            "message": outcome.user_message,
        }

    def save(
        self,
        outcome: AnalysisOutcome,
        path: str = "out/analysis.json",
        snapshot: Optional[DegradedModeSnapshot] = None
    ) -> None:
        """
        Save formatted outcome to a JSON file, creating parent directories.

        Args:
            outcome: Outcome to save
            path: Output file path (default: out/analysis.json)
            snapshot: Optional degraded-mode state to include
        """
        output_path = Path(path)
        output_path.parent.mkdir(parents=True, exist_ok=True)

        with open(output_path, 'w', encoding='utf-8') as f:
            json.dump(self.format(outcome, snapshot), f, indent=2, ensure_ascii=False)
