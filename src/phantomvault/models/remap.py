"""Old to new identifier mapping built while restoring a vault"""

from dataclasses import dataclass, field

from phantomvault.models.records import Category, RowId

# Categories other rows point to
PARENT_CATEGORIES: tuple[Category, ...] = (
    Category.NOTE_FOLDERS,
    Category.LINK_FOLDERS,
    Category.TIKTOK_FOLDERS,
    Category.ALBUMS,
    Category.FILE_ALBUMS,
    Category.PHOTOS,
    Category.FILES,
)


@dataclass
class IdRemapTable:
    """
    Per-category mapping from export-time ids to the ids assigned on import.

    A category is only merged once all of its rows have been inserted, and
    lookups of ids that never made it in resolve to None.
    """

    mappings: dict[Category, dict[RowId, RowId]] = field(
        default_factory=lambda: {category: {} for category in PARENT_CATEGORIES}
    )

    def merge(self, category: Category, pairs: dict[RowId, RowId]) -> None:
        self.mappings.setdefault(category, {}).update(pairs)

    def resolve(self, category: Category, old_id: RowId | None) -> RowId | None:
        if old_id is None:
            return None
        return self.mappings.get(category, {}).get(old_id)

    def get(self, category: Category) -> dict[RowId, RowId]:
        return dict(self.mappings.get(category, {}))

    def __len__(self) -> int:
        return sum(len(mapping) for mapping in self.mappings.values())
