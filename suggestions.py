from datetime import datetime
from typing import Dict, List

from schemas import RecipeSuggestion

RECIPES_BY_CATEGORY: Dict[str, List[RecipeSuggestion]] = {
    "蔬菜": [
        RecipeSuggestion(emoji="🥗", title="蔬菜沙拉", description="簡單拌一拌，健康又美味！"),
        RecipeSuggestion(emoji="🍲", title="蔬菜湯", description="將蔬菜煮成湯，營養滿分。"),
    ],
    "水果": [
        RecipeSuggestion(emoji="🥤", title="新鮮果汁", description="打成果汁，維生素滿滿。"),
        RecipeSuggestion(emoji="🍮", title="水果優格", description="搭配優格，健康點心。"),
    ],
    "烘焙": [
        RecipeSuggestion(emoji="🥪", title="三明治", description="夾入蔬菜與蛋，快速早餐。"),
        RecipeSuggestion(emoji="🍮", title="麵包布丁", description="剩麵包也能變甜點。"),
    ],
}

FALLBACK_RECIPES = [
    RecipeSuggestion(emoji="🍳", title="簡易快炒", description="快速翻炒，美味上桌。"),
]


def days_until(expiry: datetime, now: datetime) -> int:
    # whole days, truncated toward zero
    return int((expiry - now).total_seconds() / 86400)


def storage_hint(category: str, expiry: datetime, now: datetime) -> str:
    days = days_until(expiry, now)
    if days == 0:
        return "今日到期，請盡快食用"
    if days == 1:
        return "明日到期，建議冷藏保存"
    if 2 <= days <= 3:
        return "冷藏保存，3天內食用完畢"
    return "冷藏保存，保持新鮮" if "蔬菜" in category else "依照包裝指示保存"


def recipe_suggestions(category: str) -> List[RecipeSuggestion]:
    return list(RECIPES_BY_CATEGORY.get(category, FALLBACK_RECIPES))
