"""
Skill matching: a technician covers an incident when one of its skill tags names the
category item, its sub-category, or its main category (team).
"""

import logging
from typing import Optional

from helpdesk.models import CategoryPath, Technician
from helpdesk.services.hierarchy import CategoryHierarchyResolver

logger = logging.getLogger(__name__)


def _norm(value: Optional[str]) -> str:
    return (value or "").strip().lower()


def technician_skills(technician: Technician) -> list[str]:
    """Non-empty skill tags."""
    return [s for s in technician.skills if s and s.strip()]


def covers(technician: Technician, path: CategoryPath) -> bool:
    """Case-insensitive, trimmed match of any skill against item / sub-category / team names."""
    skills = {_norm(s) for s in technician_skills(technician)}
    if not skills:
        return False
    targets = {_norm(n) for n in (path.category, path.sub_category, path.team_name) if _norm(n)}
    return bool(skills & targets)


class SkillMatcher:
    def __init__(self, resolver: CategoryHierarchyResolver):
        self.resolver = resolver

    def is_skilled(self, technician: Technician, category: str) -> bool:
        """
        True if the technician can handle incidents in `category`.
        Any failure (unknown category, broken hierarchy, bad record) counts as not skilled.
        """
        try:
            if not technician_skills(technician):
                logger.debug("Technician %s has no skills assigned.", technician.technician_id)
                return False
            path = self.resolver.resolve(category)
            skilled = covers(technician, path)
        except Exception as e:
            logger.warning("Skill check failed for technician %s on '%s': %s",
                           getattr(technician, "technician_id", "?"), category, e)
            return False
        logger.debug("Technician %s skills %s vs %s = %s",
                     technician.technician_id, technician_skills(technician),
                     [path.category, path.sub_category, path.team_name], "MATCH" if skilled else "NO MATCH")
        return skilled

    def filter(self, technicians: list[Technician], path: CategoryPath) -> list[Technician]:
        """Keep the skilled technicians for an already-resolved path, preserving order."""
        skilled = []
        for t in technicians:
            try:
                if covers(t, path):
                    skilled.append(t)
            except Exception as e:
                logger.warning("Skill check failed for technician %s: %s", getattr(t, "technician_id", "?"), e)
        logger.info("Found %d skilled technicians out of %d for sub-category '%s'.",
                    len(skilled), len(technicians), path.sub_category)
        return skilled
