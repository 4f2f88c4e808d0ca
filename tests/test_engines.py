import pytest

from backend.recommender.baseline import get_hot_recommendations, get_recency_recommendations, paginate
from backend.recommender.collaborative import (
    calculate_user_similarity,
    get_collaborative_filtering_recommendations,
)
from backend.recommender.content import (
    calculate_preference_match,
    calculate_tag_similarity,
    get_content_based_recommendations,
    get_tag_based_recommendations,
)
from backend.recommender.interactions import aggregate_user_interactions, count_user_interactions
from backend.recommender.social_collaborative import (
    FALLBACK_TYPE,
    get_social_collaborative_filtering_recommendations,
    get_social_collaborative_filtering_stats,
    update_social_collaborative_filtering_cache,
)
from backend.app.cache import CacheStore


# baseline

def test_hot_skips_drafts_and_sorts(seeded):
    items = get_hot_recommendations(seeded, limit=3)
    assert [it.item_id for it in items] == [1, 2, 3]
    assert all(it.recommendation_type == "hot" for it in items)


def test_hot_excludes(seeded):
    items = get_hot_recommendations(seeded, limit=2, exclude_ids=[1, 2])
    assert [it.item_id for it in items] == [3, 4]


def test_recency_decays_with_age(seeded, now):
    items = get_recency_recommendations(seeded, limit=3, half_life_hours=1, now=now)
    assert [it.item_id for it in items] == [1, 2, 3]
    # one hour old with a one hour half life
    assert items[0].score == pytest.approx(0.5)
    assert items[1].score == pytest.approx(0.25)


def test_paginate_excludes_before_slicing():
    rows = [{"id": i} for i in range(1, 8)]
    page, p = paginate(rows, page=2, limit=3, exclude_ids=[1], id_of=lambda x: x["id"])
    assert [r["id"] for r in page] == [5, 6, 7]
    assert p.total == 6
    assert p.skip == 3
    assert p.hasMore is False
    assert p.totalPages == 2


# interactions / content

def test_interaction_profile(seeded, now):
    assert count_user_interactions(seeded, 1) == 5
    # publish rows are authorship, not consumption
    assert count_user_interactions(seeded, 5) == 0

    profile = aggregate_user_interactions(seeded, 1, now=now)
    assert profile.top_tags(2) == ["travel", "food"]
    assert profile.preferences["travel"] == pytest.approx(1.0)
    assert profile.preferences["food"] == pytest.approx(0.6)


def test_tag_similarity():
    assert calculate_tag_similarity(["a", "b"], ["b", "c"]) == pytest.approx(1 / 3)
    assert calculate_tag_similarity([], ["a"]) == 0.0
    with_prefs = calculate_tag_similarity(["a"], ["a", "b"], {"a": 1.0})
    assert with_prefs == pytest.approx(0.5 * 0.6 + 1.0 * 0.4)


def test_preference_match():
    prefs = {"travel": 1.0, "food": 0.6, "art": 0.4}
    assert calculate_preference_match(["travel"], prefs) == pytest.approx(0.5)
    assert calculate_preference_match(["unknown"], prefs) == 0.0
    assert calculate_preference_match(["travel"], {}) == 0.0


def test_content_based_excludes_seen_items(seeded, now):
    items = get_content_based_recommendations(seeded, 1, include_hot_score=False, now=now)
    assert [it.item_id for it in items] == [8]
    assert items[0].recommendation_type == "content_based"


def test_content_based_with_seen_items(seeded, now):
    items = get_content_based_recommendations(seeded, 1, include_hot_score=False, exclude_interacted=False, now=now)
    ids = [it.item_id for it in items]
    assert ids[0] == 1
    assert 12 not in ids


def test_content_based_cold_user(seeded):
    items = get_content_based_recommendations(seeded, 7, limit=3)
    assert [it.item_id for it in items] == [1, 2, 3]
    assert all(it.recommendation_type == "content_based_fallback" for it in items)

    assert get_content_based_recommendations(seeded, 7, fallback=False) == []


def test_tag_based(seeded):
    items = get_tag_based_recommendations(seeded, ["gaming"], include_hot_score=False)
    assert [it.item_id for it in items] == [9, 5]
    assert items[0].score == pytest.approx(1.0)
    assert get_tag_based_recommendations(seeded, []) == []
    assert get_tag_based_recommendations(seeded, ["  "]) == []


# collaborative

def test_user_similarity_cosine():
    assert calculate_user_similarity({1: 1.0}, {1: 2.0}) == pytest.approx(1.0)
    assert calculate_user_similarity({1: 1.0}, {2: 1.0}) == 0.0
    assert calculate_user_similarity({}, {1: 1.0}) == 0.0


def test_collaborative_ranks_neighbour_items(seeded):
    items = get_collaborative_filtering_recommendations(seeded, 1, include_hot_score=False)
    assert [it.item_id for it in items] == [4, 8, 5]
    assert items[0].score == pytest.approx(1.0)
    assert all(it.recommendation_type == "collaborative_filtering" for it in items)


def test_collaborative_cold_user(seeded):
    items = get_collaborative_filtering_recommendations(seeded, 7, limit=2)
    assert [it.item_id for it in items] == [1, 2]
    assert items[0].recommendation_type == "collaborative_fallback"
    assert get_collaborative_filtering_recommendations(seeded, 7, fallback=False) == []


# social collaborative

def test_social_collaborative_warm(seeded):
    items, pagination = get_social_collaborative_filtering_recommendations(
        seeded, 1, limit=10, include_hot_score=False
    )
    assert {it.item_id for it in items} == {4, 5, 8}
    assert all(it.recommendation_type == "social_collaborative_filtering" for it in items)
    assert pagination.total == 3
    assert pagination.hasMore is False


def test_social_collaborative_pages_are_disjoint(seeded):
    first, p1 = get_social_collaborative_filtering_recommendations(seeded, 1, limit=2, page=1)
    second, p2 = get_social_collaborative_filtering_recommendations(seeded, 1, limit=2, page=2)
    assert p1.hasMore is True
    assert p2.skip == 2
    assert not {it.item_id for it in first} & {it.item_id for it in second}

    shown = [it.item_id for it in first]
    rest, _ = get_social_collaborative_filtering_recommendations(seeded, 1, limit=10, exclude_ids=shown)
    assert not set(shown) & {it.item_id for it in rest}


def test_social_collaborative_fallback_pages_are_disjoint(seeded):
    first, p1 = get_social_collaborative_filtering_recommendations(seeded, 7, limit=4, page=1)
    second, _ = get_social_collaborative_filtering_recommendations(seeded, 7, limit=4, page=2)

    assert [it.item_id for it in first] == [1, 2, 3, 4]
    assert all(it.recommendation_type == FALLBACK_TYPE for it in first + second)
    assert not {it.item_id for it in first} & {it.item_id for it in second}
    # 11 public items
    assert p1.total == 11
    assert p1.totalPages == 3


def test_social_collaborative_stats(seeded):
    stats = get_social_collaborative_filtering_stats(seeded, 1)
    assert stats["followers_count"] == 2
    assert stats["following_count"] == 2
    assert stats["mutual_follows_count"] == 1
    assert stats["social_connections"] == 3
    assert stats["influence_level"] == "low"
    assert stats["social_activity"] == "active"
    assert stats["network_density"] == 0.25
    assert stats["top_social_similar_users"][0]["user_id"] == 3

    lonely = get_social_collaborative_filtering_stats(seeded, 7)
    assert lonely["social_connections"] == 0
    assert lonely["social_activity"] == "passive"
    assert lonely["influence_level"] == "none"


def test_social_cache_refresh_writes_stats(seeded):
    cache = CacheStore()
    summary = update_social_collaborative_filtering_cache(seeded, [1, 2], cache=cache)
    assert summary["total_users"] == 2
    assert summary["processing_time"] >= 0
    assert cache.get("social_cf:stats:1")["followers_count"] == 2


@pytest.mark.parametrize("user_id,limit,warm", [(1, 1, True), (7, 2, False)])
def test_social_collaborative_pages_with_growing_excludes(seeded, user_id, limit, warm):
    shown = []
    pages = []
    for page in (1, 2, 3):
        items, _ = get_social_collaborative_filtering_recommendations(
            seeded, user_id, limit=limit, page=page, exclude_ids=list(shown)
        )
        ids = [it.item_id for it in items]
        assert not set(ids) & set(shown)
        assert all((it.recommendation_type == FALLBACK_TYPE) != warm for it in items)
        pages.append(ids)
        shown.extend(ids)

    assert pages[0] and pages[1]
    assert len(shown) == len(set(shown))
