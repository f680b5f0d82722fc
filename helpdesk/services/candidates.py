"""
Candidate search for one tier of a team: active technicians -> skill filter -> round-robin.
Callers hold WorkloadGate.admission() across the selection and the save that follows.
"""

import logging
from typing import Optional

from helpdesk.models import CategoryPath, Technician, Tier
from helpdesk.services.rotation import RotationKey, RotationSelector
from helpdesk.services.skills import SkillMatcher
from helpdesk.store import Datastore

logger = logging.getLogger(__name__)


def rotation_key(path: CategoryPath, tier: Tier) -> RotationKey:
    """Tier1 groups are per sub-category; Tier2 groups span the team."""
    team = path.team_id or path.team_name
    if tier == Tier.TIER2:
        return RotationKey(team, tier)
    return RotationKey(team, tier, path.sub_category)


class CandidateSearch:
    def __init__(self, store: Datastore, matcher: SkillMatcher, selector: RotationSelector):
        self.store = store
        self.matcher = matcher
        self.selector = selector

    def candidates(self, path: CategoryPath, tier: Tier) -> list[Technician]:
        """Active, skilled technicians of the path's team in the given tier, in rotation order."""
        available = self.store.find_technicians(path.team_refs, tier, active=True)
        if not available:
            logger.info("No active %s technicians for team '%s' (id %s).", tier.value, path.team_name, path.team_id)
            return []
        return self.matcher.filter(available, path)

    def select(self, path: CategoryPath, tier: Tier) -> Optional[Technician]:
        skilled = self.candidates(path, tier)
        if not skilled:
            return None
        return self.selector.select(skilled, rotation_key(path, tier))

    def tier1(self, path: CategoryPath) -> Optional[Technician]:
        return self.select(path, Tier.TIER1)

    def tier2(self, path: CategoryPath) -> Optional[Technician]:
        return self.select(path, Tier.TIER2)
