"""
Category hierarchy resolution: CategoryItem -> SubCategory -> MainCategory (team).
"""

import logging
from typing import Optional

from helpdesk.errors import CategoryNotFound, SubCategoryNotFound, TeamNotFound
from helpdesk.models import CategoryItem, CategoryPath
from helpdesk.store import Datastore

logger = logging.getLogger(__name__)


class CategoryHierarchyResolver:
    def __init__(self, store: Datastore):
        self.store = store

    def resolve(self, category: str) -> CategoryPath:
        """
        Map an incident category label (exact, case-sensitive) to its team and sub-category.
        Raises CategoryNotFound, TeamNotFound or SubCategoryNotFound when a link is missing.
        """
        item = self.store.get_category(category) if category else None
        if item is None:
            raise CategoryNotFound(category)
        sub = item.sub_category
        main = sub.main_category if sub else None
        if main is None or not (main.id or main.name):
            raise TeamNotFound(category)
        if not sub.name:
            raise SubCategoryNotFound(category)
        return CategoryPath(team_id=main.id, team_name=main.name, sub_category=sub.name, category=item.name)

    def try_resolve(self, category: str) -> Optional[CategoryPath]:
        """Like resolve() but returns None (and logs) instead of raising; used by the sweep."""
        try:
            return self.resolve(category)
        except (CategoryNotFound, TeamNotFound, SubCategoryNotFound) as e:
            logger.warning("Cannot resolve category '%s': %s", category, e)
            return None

    def items_for_team(self, team_refs) -> list[CategoryItem]:
        """All category items whose main category matches one of the team references (id or name)."""
        refs = {str(r).strip() for r in team_refs if r}
        out = []
        for item in self.store.list_category_items():
            main = item.sub_category.main_category if item.sub_category else None
            if main and (main.id in refs or main.name in refs):
                out.append(item)
        return out
