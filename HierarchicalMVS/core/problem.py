"""
Problem Model
=============

A problem is one reconstruction unit: a reference image, its ordered source
images and the working resolution of the current hierarchical level.
"""

from dataclasses import dataclass, field
from pathlib import Path
from typing import List, Union

from ..logger import get_logger

logger = get_logger("problem")


@dataclass(frozen=True)
class Problem:
    """Reference image id, ordered source ids and the working image size"""

    ref_image_id: int
    src_image_ids: List[int] = field(default_factory=list)
    cur_image_size: int = 3200

    @property
    def num_images(self) -> int:
        return 1 + len(self.src_image_ids)


def level_image_size(max_image_size: int, level: int) -> int:
    """Working size of pyramid level ``level`` (0 = finest)"""
    return max(1, int(max_image_size) // (2 ** int(level)))


def read_pair_file(pair_path: Union[str, Path], max_image_size: int = 3200,
                   max_source_views: int = 0) -> List[Problem]:
    """
    Read an MVSNet-style ``pair.txt`` into a list of problems.

    Format::

        <num_views>
        <ref_id>
        <num_src> <src_id> <score> <src_id> <score> ...

    Args:
        pair_path: Path to pair.txt
        max_image_size: Initial working size of every problem
        max_source_views: Keep only the first N sources (0 = all)

    Returns:
        Problems indexed by reference id order; empty on a missing or
        malformed file.
    """
    pair_path = Path(pair_path)
    if not pair_path.exists():
        logger.error(f"Pair file not found: {pair_path}")
        return []

    try:
        tokens = pair_path.read_text().split()
        num_views = int(tokens[0])
        pos = 1
        problems = []
        for _ in range(num_views):
            ref_id = int(tokens[pos])
            num_src = int(tokens[pos + 1])
            pos += 2
            src_ids = [int(tokens[pos + 2 * k]) for k in range(num_src)]
            pos += 2 * num_src
            if max_source_views > 0:
                src_ids = src_ids[:max_source_views]
            problems.append(Problem(ref_id, src_ids, max_image_size))
    except (ValueError, IndexError) as e:
        logger.error(f"Malformed pair file {pair_path}: {e}")
        return []

    logger.info(f"Loaded {len(problems)} problems from {pair_path}")
    return problems
