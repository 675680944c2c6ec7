"""
Ingredient and dietary knowledge base for Kindred.

This module holds static tables of common foods, the ingredients they are made
from, ingredient derivatives and named dietary restrictions. The lookups built
on top of them let the conflict detector explain why a liked food clashes with
an allergy or a diet (for example "allergic to potatoes" vs "loves fries").
"""

import re
from collections import deque
from dataclasses import dataclass, field
from typing import Dict, List, Optional


@dataclass
class FoodItem:
    """
    A known dish with its ingredient breakdown.
    """
    name: str
    ingredients: List[str]
    categories: List[str]
    aliases: List[str] = field(default_factory=list)


@dataclass
class DietaryRestriction:
    """
    A named diet and the ingredients it rules out.
    """
    name: str
    excluded_ingredients: List[str]
    excluded_categories: List[str]
    description: str


# Base ingredient -> foods and products that contain or are made from it
INGREDIENT_DERIVATIVES: Dict[str, List[str]] = {
    # Dairy
    "milk": ["cream", "butter", "cheese", "yogurt", "whey", "casein", "lactose", "ghee", "ice cream"],
    "dairy": ["milk", "cream", "butter", "cheese", "yogurt", "whey", "casein", "lactose", "ghee", "ice cream"],

    # Eggs
    "eggs": ["mayonnaise", "meringue", "custard", "hollandaise"],

    # Meat
    "beef": ["steak", "hamburger", "meatballs", "beef broth", "gelatin"],
    "pork": ["bacon", "ham", "sausage", "prosciutto", "pepperoni", "salami", "pork chops"],
    "chicken": ["chicken breast", "chicken wings", "chicken broth", "chicken stock"],
    "meat": ["beef", "pork", "chicken", "turkey", "lamb", "veal", "duck", "bacon", "ham", "sausage"],

    # Seafood
    "fish": ["salmon", "tuna", "cod", "trout", "halibut", "sardines", "anchovies"],
    "shellfish": ["shrimp", "crab", "lobster", "oysters", "clams", "mussels", "scallops"],
    "seafood": ["fish", "shellfish", "shrimp", "crab", "lobster", "salmon", "tuna"],

    # Nuts
    "nuts": ["peanuts", "almonds", "walnuts", "cashews", "pecans", "pistachios", "hazelnuts",
             "peanut butter", "almond butter"],
    "peanuts": ["peanut butter", "peanut oil"],
    "almonds": ["almond butter", "almond milk", "marzipan"],

    # Gluten
    "gluten": ["wheat", "barley", "rye", "bread", "pasta", "beer", "flour", "seitan"],
    "wheat": ["bread", "pasta", "flour", "couscous", "semolina", "crackers"],

    # Vegetables
    "potato": ["fries", "french fries", "chips", "potato chips", "hash browns", "mashed potatoes",
               "baked potato", "potato salad"],
    "tomato": ["ketchup", "marinara", "tomato sauce", "salsa", "pizza sauce"],

    # Soy
    "soy": ["tofu", "tempeh", "soy sauce", "edamame", "miso", "soy milk"],

    # Sugar
    "sugar": ["honey", "syrup", "molasses", "agave"],
}


FOOD_DATABASE: Dict[str, FoodItem] = {
    # Potato-based
    "fries": FoodItem("fries", ["potato", "oil", "salt"], ["fried", "side-dish", "fast-food"],
                      ["french fries", "chips"]),
    "french fries": FoodItem("french fries", ["potato", "oil", "salt"], ["fried", "side-dish", "fast-food"],
                             ["fries", "chips"]),
    "potato chips": FoodItem("potato chips", ["potato", "oil", "salt"], ["snack", "fried"],
                             ["chips", "crisps"]),
    "mashed potatoes": FoodItem("mashed potatoes", ["potato", "milk", "butter"], ["side-dish"], ["mash"]),
    "hash browns": FoodItem("hash browns", ["potato", "oil", "onion"], ["breakfast", "fried"]),

    # Dairy-based
    "ice cream": FoodItem("ice cream", ["milk", "cream", "sugar"], ["dessert", "frozen", "dairy"], ["gelato"]),
    "cheese": FoodItem("cheese", ["milk", "rennet"], ["dairy"], ["cheddar", "mozzarella", "parmesan"]),
    "pizza": FoodItem("pizza", ["wheat", "cheese", "tomato"], ["italian", "fast-food"]),
    "mac and cheese": FoodItem("mac and cheese", ["wheat", "cheese", "milk"], ["pasta", "comfort-food"],
                               ["macaroni and cheese"]),

    # Meat-based
    "hamburger": FoodItem("hamburger", ["beef", "wheat", "lettuce", "tomato"], ["fast-food", "sandwich"],
                          ["burger"]),
    "bacon": FoodItem("bacon", ["pork", "salt"], ["meat", "breakfast"], ["streaky bacon"]),
    "hot dog": FoodItem("hot dog", ["pork", "beef", "wheat"], ["fast-food"], ["hotdog"]),
    "pepperoni pizza": FoodItem("pepperoni pizza", ["wheat", "cheese", "tomato", "pork"], ["italian", "fast-food"]),

    # Seafood
    "fish and chips": FoodItem("fish and chips", ["fish", "potato", "wheat", "oil"], ["seafood", "fried", "british"]),
    "sushi": FoodItem("sushi", ["fish", "rice", "seaweed"], ["seafood", "japanese"]),

    # Vegan/Vegetarian
    "veggie burger": FoodItem("veggie burger", ["vegetables", "wheat"], ["vegetarian", "sandwich"]),
    "tofu": FoodItem("tofu", ["soy"], ["vegan", "protein"], ["bean curd"]),

    # Breakfast
    "eggs benedict": FoodItem("eggs benedict", ["eggs", "wheat", "butter", "pork"], ["breakfast"]),
    "omelette": FoodItem("omelette", ["eggs", "cheese"], ["breakfast", "eggs"], ["omelet"]),

    # Desserts
    "chocolate cake": FoodItem("chocolate cake", ["wheat", "eggs", "milk", "sugar", "chocolate"],
                               ["dessert", "baked"]),
    "cheesecake": FoodItem("cheesecake", ["cheese", "eggs", "sugar", "wheat"], ["dessert"]),
}


DIETARY_RESTRICTIONS: Dict[str, DietaryRestriction] = {
    "vegan": DietaryRestriction("vegan", ["meat", "dairy", "eggs", "honey", "gelatin"],
                                ["meat", "dairy", "eggs"], "No animal products"),
    "vegetarian": DietaryRestriction("vegetarian", ["meat", "fish", "seafood", "gelatin"],
                                     ["meat", "seafood"], "No meat or fish"),
    "pescatarian": DietaryRestriction("pescatarian", ["meat", "pork", "beef", "chicken"],
                                      ["meat"], "No meat (fish is OK)"),
    "lactose intolerant": DietaryRestriction("lactose intolerant", ["milk", "dairy", "lactose"],
                                             ["dairy"], "No dairy products"),
    "kosher": DietaryRestriction("kosher", ["pork", "shellfish"], [], "Jewish dietary laws"),
    "halal": DietaryRestriction("halal", ["pork", "alcohol"], [], "Islamic dietary laws"),
    "gluten-free": DietaryRestriction("gluten-free", ["gluten", "wheat", "barley", "rye"], [], "No gluten"),
    "nut allergy": DietaryRestriction("nut allergy", ["nuts", "peanuts", "almonds", "walnuts"], [],
                                      "Allergic to nuts"),
}

# Other phrasings people use for the restrictions above
RESTRICTION_ALIASES: Dict[str, str] = {
    "lactose intolerance": "lactose intolerant",
    "celiac": "gluten-free",
    "coeliac": "gluten-free",
    "gluten intolerant": "gluten-free",
    "peanut allergy": "nut allergy",
    "allergic to nuts": "nut allergy",
}

IRREGULAR_PLURALS: Dict[str, str] = {
    "leaves": "leaf",
    "loaves": "loaf",
    "halves": "half",
    "knives": "knife",
    "cookies": "cookie",
    "brownies": "brownie",
    "smoothies": "smoothie",
    "veggies": "veggie",
    "pies": "pie",
    "quiches": "quiche",
    "brioches": "brioche",
}

# Words that end in "s" but are already singular
INVARIANT_WORDS = {"fish", "molasses", "series", "species", "news", "swiss"}

ARTICLES = ("a ", "an ", "the ")
ACTIVITY_PREFIXES = ("eating ", "eats ", "eat ", "drinking ", "drinks ", "drink ", "having ", "has ")

# Broad groups are too coarse to suggest that two members share a base
BROAD_GROUPS = {"dairy", "meat", "seafood", "nut", "gluten"}


def normalize_food_name(name: str) -> str:
    """
    Lowercase a label, drop punctuation, articles and leading verbs.

    Args:
        name: A free-text food, ingredient or restriction label

    Returns:
        The normalized label ("Eats French-Fries!" -> "french fries")
    """
    text = name.lower().strip().replace("&", " and ")
    text = re.sub(r"[-_/]", " ", text)
    text = re.sub(r"[^\w\s]", "", text)
    text = " ".join(text.split())

    for article in ARTICLES:
        if text.startswith(article):
            text = text[len(article):]
            break
    for prefix in ACTIVITY_PREFIXES:
        if text.startswith(prefix):
            text = text[len(prefix):]
            break

    return text


def singularize(word: str) -> str:
    """
    Fold a single English word to its singular form.

    Only the plural shapes that show up in food vocabulary are handled; this
    is deliberately not a stemmer.

    Args:
        word: A lowercase word

    Returns:
        The singular form of the word
    """
    if word in IRREGULAR_PLURALS:
        return IRREGULAR_PLURALS[word]
    if word in INVARIANT_WORDS or len(word) <= 3:
        return word
    if word.endswith("ies"):
        return word[:-3] + "y"
    if word.endswith("oes"):
        return word[:-2]
    if word.endswith(("ches", "shes", "xes")):
        return word[:-2]
    if word.endswith(("ss", "us", "is")):
        return word
    if word.endswith("s"):
        return word[:-1]
    return word


def fold_food_name(name: str) -> str:
    """
    Build the matching key for a label: normalized, last word singularized.

    Args:
        name: A free-text food or ingredient label

    Returns:
        The folded key ("Mashed Potatoes" -> "mashed potato")
    """
    words = normalize_food_name(name).split()
    if not words:
        return ""
    words[-1] = singularize(words[-1])
    return " ".join(words)


# Folded key -> display name, and the two directions of the "contains" graph
_DISPLAY_NAMES: Dict[str, str] = {}
_CONTAINS: Dict[str, List[str]] = {}
_DERIVED: Dict[str, List[str]] = {}


def _register(name: str) -> str:
    key = fold_food_name(name)
    _DISPLAY_NAMES.setdefault(key, normalize_food_name(name))
    return key


def _link(item: str, base: str) -> None:
    item_key = _register(item)
    base_key = _register(base)
    if item_key == base_key:
        return
    contains = _CONTAINS.setdefault(item_key, [])
    if base_key not in contains:
        contains.append(base_key)
    derived = _DERIVED.setdefault(base_key, [])
    if item_key not in derived:
        derived.append(item_key)


def _build_index() -> None:
    for food in FOOD_DATABASE.values():
        for name in [food.name] + food.aliases:
            for ingredient in food.ingredients:
                _link(name, ingredient)

    for base, derivatives in INGREDIENT_DERIVATIVES.items():
        _register(base)
        for derivative in derivatives:
            _link(derivative, base)

    for restriction in DIETARY_RESTRICTIONS.values():
        for ingredient in restriction.excluded_ingredients:
            _register(ingredient)


_build_index()


def _display(key: str) -> str:
    return _DISPLAY_NAMES.get(key, key)


def _components(label: str) -> List[str]:
    """Split a label into known vocabulary keys, longest match first."""
    key = fold_food_name(label)
    if not key:
        return []
    if key in _DISPLAY_NAMES:
        return [key]

    words = normalize_food_name(label).split()
    found: List[str] = []
    start = 0
    while start < len(words):
        for end in range(len(words), start, -1):
            candidate = fold_food_name(" ".join(words[start:end]))
            if candidate in _DISPLAY_NAMES:
                if candidate not in found:
                    found.append(candidate)
                start = end
                break
        else:
            start += 1
    return found


def _start_keys(label: str) -> List[str]:
    components = _components(label)
    if components:
        return components
    key = fold_food_name(label)
    return [key] if key else []


def _walk(start_keys: List[str], edges: Dict[str, List[str]]) -> Dict[str, List[str]]:
    """Breadth-first walk returning the shortest key path to every reachable key."""
    paths: Dict[str, List[str]] = {}
    queue = deque()
    for key in start_keys:
        if key not in paths:
            paths[key] = [key]
            queue.append(key)

    while queue:
        node = queue.popleft()
        for neighbour in edges.get(node, []):
            if neighbour not in paths:
                paths[neighbour] = paths[node] + [neighbour]
                queue.append(neighbour)
    return paths


def _render_path(label: str, key_path: List[str]) -> List[str]:
    names = [_display(key) for key in key_path]
    head = normalize_food_name(label)
    if fold_food_name(label) != key_path[0]:
        names.insert(0, head)
    return names


def is_known_food(label: str) -> bool:
    """Check whether any part of a label is in the food vocabulary."""
    return bool(_components(label))


def ingredient_closure(food_name: str) -> List[str]:
    """
    Get everything a food is made from, directly or transitively.

    Args:
        food_name: A food label, possibly made of several known parts

    Returns:
        Display names of the food's parts and all of their ingredients
    """
    return [_display(key) for key in _walk(_start_keys(food_name), _CONTAINS)]


def derivative_closure(ingredient: str) -> List[str]:
    """
    Get every known food that contains an ingredient, directly or transitively.

    Args:
        ingredient: An ingredient label (e.g. "potatoes")

    Returns:
        Display names of the ingredient and all foods derived from it
    """
    return [_display(key) for key in _walk(_start_keys(ingredient), _DERIVED)]


@dataclass
class IngredientLink:
    """
    Explains how a food relates to a restricted ingredient.
    """
    food: str
    ingredient: str
    path: List[str]
    via_shared_base: bool = False

    @property
    def explanation(self) -> str:
        if self.via_shared_base:
            chain = " → ".join(self.path[:-1])
            return f"{chain} ← {self.path[-1]} ({self.path[-1]} is also made from {self.path[-2]})"
        return " → ".join(self.path)


def trace_ingredient(food_name: str, ingredient: str) -> Optional[IngredientLink]:
    """
    Find the derivation linking a food to a restricted ingredient.

    Two checks are made: whether the food (or one of its parts) contains the
    ingredient, and whether the ingredient is itself a known derivative of
    the food or of one of its direct ingredients.

    Args:
        food_name: The food someone eats or likes
        ingredient: The ingredient someone is allergic or sensitive to

    Returns:
        The derivation, or None if the two are unrelated
    """
    food_keys = _start_keys(food_name)
    targets = _start_keys(ingredient)
    if not food_keys or not targets:
        return None

    reachable = _walk(food_keys, _CONTAINS)
    for target in targets:
        if target in reachable:
            return IngredientLink(
                food=normalize_food_name(food_name),
                ingredient=normalize_food_name(ingredient),
                path=_render_path(food_name, reachable[target])
            )

    for target in targets:
        for key, key_path in reachable.items():
            if len(key_path) > 2 or key in BROAD_GROUPS:
                continue
            if target in _DERIVED.get(key, []):
                return IngredientLink(
                    food=normalize_food_name(food_name),
                    ingredient=normalize_food_name(ingredient),
                    path=_render_path(food_name, key_path) + [_display(target)],
                    via_shared_base=True
                )
    return None


def food_contains_ingredient(food_name: str, ingredient: str) -> bool:
    """Check if a food contains an ingredient, following derivatives."""
    return trace_ingredient(food_name, ingredient) is not None


def lookup_dietary_restriction(label: str) -> Optional[DietaryRestriction]:
    """
    Resolve a free-text label to a known dietary restriction.

    Args:
        label: e.g. "Vegan", "a vegetarian", "gluten free", "lactose-intolerant"

    Returns:
        The matching restriction, or None if the label is not a known diet
    """
    text = normalize_food_name(label)
    for candidate in (text, fold_food_name(text)):
        if candidate in _RESTRICTION_INDEX:
            return DIETARY_RESTRICTIONS[_RESTRICTION_INDEX[candidate]]
    return None


def is_dietary_restriction(label: str) -> bool:
    return lookup_dietary_restriction(label) is not None


def _build_restriction_index() -> Dict[str, str]:
    index = {normalize_food_name(name): name for name in DIETARY_RESTRICTIONS}
    for alias, name in RESTRICTION_ALIASES.items():
        index[normalize_food_name(alias)] = name
    return index


_RESTRICTION_INDEX = _build_restriction_index()


@dataclass
class DietaryCheck:
    """
    Outcome of checking one food against one dietary restriction.
    """
    compatible: bool
    restriction: Optional[str] = None
    excluded_ingredient: Optional[str] = None
    path: List[str] = field(default_factory=list)
    reason: Optional[str] = None


def check_dietary_compatibility(food_name: str, restriction: str) -> DietaryCheck:
    """
    Check whether a food fits a dietary restriction.

    Args:
        food_name: The food to check (e.g. "cheese pizza")
        restriction: The diet label (e.g. "vegan")

    Returns:
        A DietaryCheck; unknown restrictions are reported as compatible
    """
    diet = lookup_dietary_restriction(restriction)
    if not diet:
        return DietaryCheck(compatible=True)

    reachable = _walk(_start_keys(food_name), _CONTAINS)
    for excluded in diet.excluded_ingredients:
        key = fold_food_name(excluded)
        if key in reachable:
            path = _render_path(food_name, reachable[key])
            return DietaryCheck(
                compatible=False,
                restriction=diet.name,
                excluded_ingredient=excluded,
                path=path,
                reason=f"Contains {excluded} ({diet.description}): {' → '.join(path)}"
            )

    return DietaryCheck(compatible=True, restriction=diet.name)


def find_conflicting_foods(restriction_or_allergy: str, foods: List[str]) -> List[Dict[str, str]]:
    """
    Find the foods in a list that clash with an allergy or a diet.

    Args:
        restriction_or_allergy: A diet name ("vegan") or an ingredient ("peanuts")
        foods: Food labels to check

    Returns:
        List of {"food": ..., "reason": ...} entries, in input order
    """
    conflicts = []
    is_diet = is_dietary_restriction(restriction_or_allergy)

    for food in foods:
        if is_diet:
            check = check_dietary_compatibility(food, restriction_or_allergy)
            if not check.compatible:
                conflicts.append({"food": food, "reason": check.reason})
        else:
            link = trace_ingredient(food, restriction_or_allergy)
            if link:
                conflicts.append({
                    "food": food,
                    "reason": f"Contains {restriction_or_allergy}: {link.explanation}"
                })

    return conflicts


def dietary_implications(restriction: str) -> List[str]:
    """
    Get the ingredients a diet rules out ("vegan" -> meat, dairy, eggs, ...).
    """
    diet = lookup_dietary_restriction(restriction)
    return list(diet.excluded_ingredients) if diet else []
