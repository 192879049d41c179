"""
Feed Access

Locates a data source's feed files and brings them into the local working directory
the feed processor reads from. Remote drop locations plug in behind FeedAccessor; the
repository ships a local filesystem implementation.
"""

import logging
import shutil
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Dict, Union

from migration.errors import FeedAccessError
from migration.plan import DataSourcePlan

logger = logging.getLogger(__name__)


class FeedAccessor(ABC):
    """Source of feed files for a data source."""

    @abstractmethod
    def needs_to_process(self, plan: DataSourcePlan) -> bool:
        """True when the drop location holds feed files worth loading."""

    @abstractmethod
    def fetch(self, plan: DataSourcePlan, working_dir: Path) -> Dict[str, Path]:
        """
        Place every feed file of the plan in ``working_dir``.

        Returns:
            Mapping of feed file name to its local path

        Raises:
            FeedAccessError: If a feed file is missing or cannot be copied
        """


class LocalFeedAccessor(FeedAccessor):
    """
    Feed files dropped on the local filesystem under ``<root>/<data source code>/``.
    """

    def __init__(self, root: Union[str, Path]):
        self.root = Path(root)

    def drop_dir(self, plan: DataSourcePlan) -> Path:
        return self.root / plan.code

    def needs_to_process(self, plan: DataSourcePlan) -> bool:
        drop_dir = self.drop_dir(plan)
        missing = [f.file_name for f in plan.feed_files if not (drop_dir / f.file_name).is_file()]
        if missing:
            logger.info(f"{plan.code}: nothing to process, missing {missing} in {drop_dir}")
            return False
        return True

    def fetch(self, plan: DataSourcePlan, working_dir: Path) -> Dict[str, Path]:
        drop_dir = self.drop_dir(plan)
        working_dir = Path(working_dir)
        working_dir.mkdir(parents=True, exist_ok=True)

        local_files = {}
        for feed_file in plan.feed_files:
            source = drop_dir / feed_file.file_name
            if not source.is_file():
                raise FeedAccessError(f"Feed file {source} not found for {plan.code}")
            target = working_dir / feed_file.file_name
            try:
                if source.resolve() != target.resolve():
                    shutil.copy2(source, target)
            except OSError as e:
                raise FeedAccessError(f"Could not copy {source} to {target}: {e}") from e
            local_files[feed_file.file_name] = target
            logger.debug(f"{plan.code}: fetched {source} -> {target}")
        return local_files


def resolve_local_files(plan: DataSourcePlan, working_dir: Path) -> Dict[str, Path]:
    """
    Feed files already present in ``working_dir``, used when downloading is skipped.

    Raises:
        FeedAccessError: If a feed file is not there
    """
    local_files = {}
    for feed_file in plan.feed_files:
        path = Path(working_dir) / feed_file.file_name
        if not path.is_file():
            raise FeedAccessError(f"Feed file {path} not found for {plan.code}")
        local_files[feed_file.file_name] = path
    return local_files
