"""
Key layout for the engagement engine.

Every key the engine reads or writes is built here so the layout is defined
in one place. The store prefixes each key with the configured namespace
(`{namespace}:`), so these helpers return the un-prefixed part only.

The store is NOT a source of truth for the catalog. Catalog sets
(product category, style tags, category membership, complementary
categories) are maintained by the catalog service; the engine only reads
them, apart from the index helpers used for seeding.
"""

# ────────────────────────────────────────────────────────────────────────────
# Key Table
# ────────────────────────────────────────────────────────────────────────────
#
# Data                     | Key Pattern                            | Type       | TTL
# -------------------------+----------------------------------------+------------+-----------
# Like count               | product:{pid}:likes                    | counter    | none
# Liked products           | likes:{identity}                       | set        | none
# Recently viewed          | user:{identity}:recentlyViewed         | list (10)  | 7 days, rolling
# Viewed categories        | user:{identity}:viewedCategories       | zset       | 30 days
# Bought together          | product:{pid}:boughtWith               | zset (20)  | none
# Style matches            | product:{pid}:styleMatches             | zset       | 90 days
# Hourly category views    | category:{cid}:hourlyViews:{bucket}    | zset       | 2 hours
# Popular in category      | category:{cid}:popularProducts         | zset       | 30 days
# Live viewer mirror       | product:{pid}:viewers                  | int        | 5 min
# Product category         | product:{pid}:category                 | string     | none
# Product style tags       | product:{pid}:styleTags                | set        | none
# Complementary categories | category:{cid}:complementary           | set        | none
# Category membership      | category:{cid}:products                | set        | none
# Style tag membership     | styleTag:{tag}:products                | set        | none
# Cart                     | cart:{identity}                        | JSON       | 7 days, rolling
# Rate-limit window        | rate-limit:{identity}                  | counter    | window
#
# hourBucket = floor(unix_seconds / 3600)
#
# ────────────────────────────────────────────────────────────────────────────
# Consistency Expectations
# ────────────────────────────────────────────────────────────────────────────
#
# - Single-key operations are atomic; nothing is atomic across keys.
# - Like count and liked-set are mutated by two separate commands. A reader
#   may see one without the other, and racing toggles may drift the count.
# - Once an hourly bucket expires its views are gone; trending only ever
#   compares the current bucket with the one immediately before it.


def like_count(product_id: str) -> str:
    return f"product:{product_id}:likes"


def liked_products(identity: str) -> str:
    return f"likes:{identity}"


def recently_viewed(identity: str) -> str:
    return f"user:{identity}:recentlyViewed"


def viewed_categories(identity: str) -> str:
    return f"user:{identity}:viewedCategories"


def bought_with(product_id: str) -> str:
    return f"product:{product_id}:boughtWith"


def style_matches(product_id: str) -> str:
    return f"product:{product_id}:styleMatches"


def hourly_views(category_id: str, bucket: int) -> str:
    return f"category:{category_id}:hourlyViews:{bucket}"


def popular_products(category_id: str) -> str:
    return f"category:{category_id}:popularProducts"


def viewers(product_id: str) -> str:
    return f"product:{product_id}:viewers"


def product_category(product_id: str) -> str:
    return f"product:{product_id}:category"


def product_style_tags(product_id: str) -> str:
    return f"product:{product_id}:styleTags"


def complementary_categories(category_id: str) -> str:
    return f"category:{category_id}:complementary"


def category_products(category_id: str) -> str:
    return f"category:{category_id}:products"


def style_tag_products(tag: str) -> str:
    return f"styleTag:{tag}:products"


def cart(identity: str) -> str:
    return f"cart:{identity}"


def rate_limit(identity: str) -> str:
    return f"rate-limit:{identity}"
