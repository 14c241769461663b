import pytest

from conftest import make_feedback, make_profile
from protocol_rec.collaborative import NullNeighborSource, ProfileNeighborSource


@pytest.fixture
def peers():
    return [
        make_profile(id="u1"),
        make_profile(id="twin"),
        make_profile(id="different", fitness_level="expert", goals=["fat-loss"],
                     equipment={"kettlebells"}, age=60, weekly_frequency=6),
    ]


def test_null_source_is_empty(profile):
    source = NullNeighborSource()
    assert source.neighbors(profile, 5) == []
    assert source.rating("u1", "p") is None


def test_neighbors_exclude_self_and_rank_by_similarity(peers):
    source = ProfileNeighborSource(peers)

    neighbors = source.neighbors(peers[0], k=5)

    ids = [user_id for user_id, _ in neighbors]
    assert "u1" not in ids
    assert ids[0] == "twin"
    assert neighbors[0][1] == pytest.approx(1.0)
    assert all(sim > 0 for _, sim in neighbors)
    assert len(source.neighbors(peers[0], k=1)) == 1


def test_latest_rating_wins_and_is_normalized(peers):
    feedback = [
        make_feedback(user_id="twin", rating=2),
        make_feedback(user_id="twin", rating=5),
        make_feedback(user_id="stranger", rating=1),
    ]
    source = ProfileNeighborSource(peers, feedback)

    assert source.rating("twin", "gmax-strength-foundation") == pytest.approx(1.0)
    assert source.rating("twin", "gmax-powerlifting-elite") is None
    assert source.rating("stranger", "gmax-strength-foundation") is None


def test_source_without_profiles():
    source = ProfileNeighborSource([])
    assert source.neighbors(make_profile(), 3) == []
    assert source.rating("u1", "p") is None
