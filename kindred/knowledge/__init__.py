"""Static domain knowledge used during conflict detection."""

from .food import (
    DIETARY_RESTRICTIONS,
    FOOD_DATABASE,
    INGREDIENT_DERIVATIVES,
    DietaryCheck,
    IngredientLink,
    check_dietary_compatibility,
    derivative_closure,
    dietary_implications,
    find_conflicting_foods,
    fold_food_name,
    food_contains_ingredient,
    ingredient_closure,
    is_dietary_restriction,
    lookup_dietary_restriction,
    normalize_food_name,
    singularize,
    trace_ingredient,
)

__all__ = [
    "DIETARY_RESTRICTIONS",
    "FOOD_DATABASE",
    "INGREDIENT_DERIVATIVES",
    "DietaryCheck",
    "IngredientLink",
    "check_dietary_compatibility",
    "derivative_closure",
    "dietary_implications",
    "find_conflicting_foods",
    "fold_food_name",
    "food_contains_ingredient",
    "ingredient_closure",
    "is_dietary_restriction",
    "lookup_dietary_restriction",
    "normalize_food_name",
    "singularize",
    "trace_ingredient",
]
