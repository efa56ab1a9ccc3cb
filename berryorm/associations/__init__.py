from .base import Association, BoundAssociation
from .belongs_to import BelongsTo
from .belongs_to_many import BelongsToMany
from .has_many import HasMany
from .has_one import HasOne

__all__ = [
    'Association',
    'BoundAssociation',
    'BelongsTo',
    'BelongsToMany',
    'HasMany',
    'HasOne',
]
