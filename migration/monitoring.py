"""
Monitoring Publisher

Writes a small status file per data source after every load so operations can key off
the first line (``true`` or ``false``). The file is written to ``<root>/<code>/latest/``
and copied to a timestamped directory next to it.

Publishing is best effort: failures are logged and never raised.
"""

import logging
import shutil
import traceback
from datetime import datetime, timezone
from pathlib import Path
from typing import Iterable, Optional, Union

from migration.phase_log import PhaseLogEntry
from migration.plan import DataSourcePlan

logger = logging.getLogger(__name__)

MONITORING_FILE_NAME = "dataMigrationRun"
SEPARATOR = "=" * 95


class FileSystemMonitoringPublisher:
    def __init__(self, root: Union[str, Path]):
        self.root = Path(root)

    def publish_success(self, plan: DataSourcePlan, entries: Iterable[PhaseLogEntry]) -> Optional[Path]:
        return self._publish(plan, True, entries, None)

    def publish_failure(self, plan: DataSourcePlan, entries: Iterable[PhaseLogEntry],
                        error: Optional[BaseException]) -> Optional[Path]:
        return self._publish(plan, False, entries, error)

    def _publish(self, plan: DataSourcePlan, success: bool, entries: Iterable[PhaseLogEntry],
                 error: Optional[BaseException]) -> Optional[Path]:
        """
        Write the latest file and its historical copy.

        Returns:
            Path of the latest file, or None when publishing failed
        """
        try:
            utc_now = datetime.now(timezone.utc)
            latest_dir = self.root / plan.code / "latest"
            historical_dir = self.root / plan.code / utc_now.strftime("%Y-%m-%dT%H:%M:%S").replace(":", ".")
            latest_dir.mkdir(parents=True, exist_ok=True)
            historical_dir.mkdir(parents=True, exist_ok=True)

            latest_path = latest_dir / MONITORING_FILE_NAME
            latest_path.write_text(render_monitoring_file(plan, success, entries, error, utc_now), encoding="utf-8")
            shutil.copyfile(latest_path, historical_dir / MONITORING_FILE_NAME)
            logger.info(f"Published {'success' if success else 'failure'} for {plan.code} to {latest_path}")
            return latest_path
        except Exception as e:
            logger.error(f"Failed to publish monitoring data for {plan.code}: {e}", exc_info=True)
            return None


def render_monitoring_file(plan: DataSourcePlan, success: bool, entries: Iterable[PhaseLogEntry],
                           error: Optional[BaseException], utc_now: datetime) -> str:
    lines = [
        "true" if success else "false",
        f"Date (UTC): {utc_now.strftime('%Y-%m-%d %H:%M:%S')}",
        f"DataSourceCode: {plan.code}",
    ]
    if error is not None:
        lines += [
            SEPARATOR,
            "EXCEPTION INFORMATION",
            f"Exception type: {type(error).__module__}.{type(error).__qualname__}",
            f"Exception message: {error}",
            "Exception stacktrace: " + "".join(traceback.format_tb(error.__traceback__)).rstrip(),
        ]
    lines += ["", SEPARATOR, "", "PHASE LOG ENTRIES"]
    for entry in entries:
        records = entry.number_of_records if entry.number_of_records is not None else -1
        lines.append(
            f"LogSource: {entry.log_source}\tPhase: {int(entry.phase)}\tNumberOfRecords: {records}\t"
            f"Description:{entry.description or '(none)'}"
        )
    return "\n".join(lines) + "\n"
