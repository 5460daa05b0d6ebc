"""Fixed ammunition domain tables used by intent parsing and ranking."""

from typing import Dict, List, Optional

# Bullet type groupings
BULLET_TYPE_CATEGORIES: Dict[str, List[str]] = {
    "defensive": ["JHP", "HP", "BJHP", "XTP", "HST", "GDHP"],
    "training": ["FMJ", "TMJ", "CMJ", "MC", "BALL"],
    "hunting": ["SP", "JSP", "PSP", "VMAX"],
    "specialty": ["FRANGIBLE", "AP", "TRACER", "WADCUTTER", "SWC"],
    "shotgun": ["BUCKSHOT", "BIRDSHOT", "SLUG"],
}

# Hollow-point family, expands in soft tissue
EXPANDING_BULLET_TYPES = ["JHP", "HP", "BJHP", "XTP", "HST", "GDHP"]

# Upper grain weight still considered light for a caliber
LIGHT_GRAIN_THRESHOLDS: Dict[str, int] = {
    "9mm": 115,
    ".45": 185,
    ".223": 55,
    "5.56": 55,
    ".308": 150,
    "7.62": 150,
    ".40": 155,
}

# Product name fragments that indicate short-barrel tuned loads
SHORT_BARREL_NAME_INDICATORS = [
    "critical defense",
    "short barrel",
    "compact",
    "micro",
    "hst micro",
    "ranger bonded",
    "critical duty",
]

# Common platform-to-caliber mappings
PLATFORM_CALIBER_MAP: Dict[str, List[str]] = {
    "ar15": [".223/5.56"],
    "ar-15": [".223/5.56"],
    "ar10": [".308/7.62x51"],
    "ar-10": [".308/7.62x51"],
    "ak47": ["7.62x39mm"],
    "ak-47": ["7.62x39mm"],
    "ak74": ["5.45x39mm"],
    "mini-14": [".223/5.56"],
    "sks": ["7.62x39mm"],
    "m1 garand": [".30-06 Springfield"],
    "mosin nagant": ["7.62x54R"],
    "glock 19": ["9mm"],
    "glock 17": ["9mm"],
    "glock 43": ["9mm"],
    "1911": [".45 ACP"],
    "sig p365": ["9mm"],
    "revolver": [".38 Special", ".357 Magnum"],
    "shotgun": ["12 Gauge", "20 Gauge"],
}

# Longest aliases are matched first
CALIBER_ALIASES: Dict[str, str] = {
    "9mm luger": "9mm",
    "9x19": "9mm",
    "9mm": "9mm",
    "5.56 nato": ".223/5.56",
    "5.56": ".223/5.56",
    ".223 remington": ".223/5.56",
    ".223": ".223/5.56",
    "223": ".223/5.56",
    ".308 winchester": ".308/7.62x51",
    "7.62 nato": ".308/7.62x51",
    ".308": ".308/7.62x51",
    "308": ".308/7.62x51",
    "7.62x39": "7.62x39mm",
    ".45 acp": ".45 ACP",
    ".45": ".45 ACP",
    "45 acp": ".45 ACP",
    ".40 s&w": ".40 S&W",
    ".40": ".40 S&W",
    ".380 acp": ".380 ACP",
    ".380": ".380 ACP",
    ".38 special": ".38 Special",
    ".357 magnum": ".357 Magnum",
    ".22 lr": ".22 LR",
    "22lr": ".22 LR",
    "12 gauge": "12 Gauge",
    "12ga": "12 Gauge",
    "20 gauge": "20 Gauge",
    ".30-06": ".30-06 Springfield",
    "6.5 creedmoor": "6.5 Creedmoor",
}

PURPOSE_SYNONYMS: Dict[str, str] = {
    "target": "Target",
    "practice": "Target",
    "training": "Target",
    "range": "Target",
    "plinking": "Target",
    "competition": "Target",
    "defense": "Defense",
    "self-defense": "Defense",
    "self defense": "Defense",
    "home defense": "Defense",
    "protection": "Defense",
    "carry": "Defense",
    "ccw": "Defense",
    "edc": "Defense",
    "hunting": "Hunting",
    "hunt": "Hunting",
    "deer": "Hunting",
    "elk": "Hunting",
    "varmint": "Hunting",
    "hog": "Hunting",
}

CALIBER_GRAIN_RANGES: Dict[str, Dict[str, List[int]]] = {
    "9mm": {"light": [115], "medium": [124], "heavy": [147]},
    ".223/5.56": {"light": [55], "medium": [62, 64], "heavy": [69, 77]},
    ".308/7.62x51": {"light": [147, 150], "medium": [165, 168], "heavy": [175, 180]},
    ".45 ACP": {"light": [185], "medium": [200], "heavy": [230]},
    ".40 S&W": {"light": [155], "medium": [165], "heavy": [180]},
}

QUALITY_INDICATORS: Dict[str, List[str]] = {
    "match-grade": ["match", "matchking", "smk", "gold medal", "berger", "lapua", "eld-m", "bthp"],
    "budget": ["steel case", "wolf", "tula", "barnaul", "brown bear", "cheap", "budget", "bulk"],
    "premium": ["federal premium", "speer gold dot", "barnes", "premium"],
}

AMMO_BRANDS: List[str] = [
    "federal", "hornady", "winchester", "remington", "speer", "cci", "pmc", "fiocchi",
    "sig sauer", "blazer", "american eagle", "magtech", "sellier & bellot", "aguila",
    "norma", "prvi partizan", "wolf", "tula", "barnaul", "brown bear", "barnes", "nosler",
    "berger", "lapua", "sierra",
]

# Keyword -> canonical bullet type, longest keywords matched first
BULLET_TYPE_KEYWORDS: Dict[str, str] = {
    "full metal jacket": "FMJ",
    "total metal jacket": "TMJ",
    "hollow point": "JHP",
    "hollowpoint": "JHP",
    "soft point": "SP",
    "gold dot": "GDHP",
    "frangible": "FRANGIBLE",
    "tracer": "TRACER",
    "bjhp": "BJHP",
    "jhp": "JHP",
    "hst": "HST",
    "fmj": "FMJ",
    "tmj": "TMJ",
    "jsp": "JSP",
    "bthp": "BTHP",
    "otm": "OTM",
}

# Brands with consistently complete attribute data
WELL_DOCUMENTED_BRANDS = ["federal", "hornady", "speer", "winchester", "remington", "sig sauer"]

COMMON_PLATFORMS = ["AR-15", "AR-10", "AK-47", "Glock", "1911", "Shotgun"]
COMMON_CALIBERS = ["9mm", ".223", "5.56", ".308", ".45 ACP", "12 gauge"]


def bullet_category(bullet_type: Optional[str]) -> Optional[str]:
    """Return the category a bullet type belongs to, if any."""
    if not bullet_type:
        return None
    upper = bullet_type.upper()
    for category, types in BULLET_TYPE_CATEGORIES.items():
        if upper in types:
            return category
    return None


def is_light_for_caliber(caliber: Optional[str], grain_weight: Optional[int]) -> bool:
    """Check whether a grain weight is light-for-caliber."""
    if not caliber or not grain_weight:
        return False
    lowered = caliber.lower()
    for fragment, threshold in LIGHT_GRAIN_THRESHOLDS.items():
        if fragment in lowered:
            return grain_weight <= threshold
    return False
