"""Tests for tiered feature loading."""

import logging
from typing import Optional

import pytest

from src.data.feature_loader import (
    BASELINE_APPROXIMATION_VERSION,
    BaselineTier,
    DataGapError,
    DataSource,
    FeatureLoader,
    GameTier,
    MissingTier,
    SeasonTier,
    commits_signal,
    get_data_source_summary,
    resolve_tier,
)
from src.data.feature_store import (
    BaselineRatingRecord,
    CommitsRecord,
    GameStatRecord,
    SeasonStatRecord,
    TalentRecord,
)


def _game(week: int, team_id: str = "A", **metrics) -> GameStatRecord:
    return GameStatRecord(team_id=team_id, season=2025, game_id=f"{team_id}-{week}", week=week, **metrics)


class FakeReader:
    """In-memory reader; teams listed in fail_teams raise on every read."""

    def __init__(
        self,
        games: Optional[dict] = None,
        seasons: Optional[dict] = None,
        baselines: Optional[dict] = None,
        talent: Optional[dict] = None,
        commits: Optional[dict] = None,
        final_games: Optional[dict] = None,
        fail_teams: tuple = (),
        fail_talent: tuple = (),
    ):
        self.games = games or {}
        self.seasons = seasons or {}
        self.baselines = baselines or {}
        self.talent = talent or {}
        self.commits = commits or {}
        self.final_games = final_games or {}
        self.fail_teams = set(fail_teams)
        self.fail_talent = set(fail_talent)
        self.baseline_versions = []

    def _check(self, team_id):
        if team_id in self.fail_teams:
            raise ConnectionError(f"store unavailable for {team_id}")

    def get_game_stats(self, team_id, season, limit):
        self._check(team_id)
        return self.games.get(team_id, [])[:limit]

    def get_season_stats(self, team_id, season):
        self._check(team_id)
        return self.seasons.get(team_id)

    def get_baseline_rating(self, team_id, season, model_version):
        self._check(team_id)
        self.baseline_versions.append(model_version)
        return self.baselines.get(team_id)

    def get_talent(self, team_id, season):
        if team_id in self.fail_talent:
            raise TimeoutError("talent table locked")
        return self.talent.get(team_id)

    def get_commits(self, team_id, season):
        return self.commits.get(team_id)

    def count_final_games(self, team_id, season):
        return self.final_games.get(team_id, 0)


class TestResolveTier:
    """The pure tier resolver."""

    def test_game_tier_averages_and_confidence(self):
        """Four games -> confidence 4/8; nulls skipped per metric."""
        records = [
            _game(4, ypp_off=6.0, success_off=0.50),
            _game(3, ypp_off=5.0, success_off=None),
            _game(2, ypp_off=4.0, success_off=0.40),
            _game(1, ypp_off=5.0, success_off=None),
        ]
        tier = resolve_tier(records, None, None)
        assert isinstance(tier, GameTier)
        assert tier.games_count == 4
        assert tier.confidence == pytest.approx(0.5)
        assert tier.metrics["ypp_off"] == pytest.approx(5.0)
        assert tier.metrics["success_off"] == pytest.approx(0.45)
        assert tier.metrics["epa_off"] is None

    def test_game_window_caps_at_ten(self):
        records = [_game(w, ypp_off=float(w)) for w in range(12, 0, -1)]
        tier = resolve_tier(records, None, None, window=10)
        assert tier.games_count == 10
        assert tier.confidence == 1.0
        # Weeks 12..3
        assert tier.metrics["ypp_off"] == pytest.approx(7.5)

    def test_records_without_efficiency_fall_through(self):
        """Game rows with only pace data do not qualify for the game tier."""
        records = [_game(1, pace_off=70.0)]
        season = SeasonStatRecord(team_id="A", season=2025, ypp_off=5.5)
        tier = resolve_tier(records, season, None)
        assert isinstance(tier, SeasonTier)
        assert tier.confidence == 0.7
        assert tier.metrics["ypp_off"] == 5.5

    def test_baseline_tier_from_prior_rating(self):
        """No game or season data, prior offense rating 12.0 -> baseline tier."""
        baseline = BaselineRatingRecord(
            team_id="A", season=2025, model_version="v1", offense_rating=12.0, defense_rating=-3.0
        )
        tier = resolve_tier([], None, baseline)
        assert isinstance(tier, BaselineTier)
        assert tier.confidence == 0.3
        assert tier.approximation == BASELINE_APPROXIMATION_VERSION
        assert tier.metrics["ypp_off"] == pytest.approx(1.2)
        assert tier.metrics["epa_off"] == pytest.approx(0.6)
        # Non-positive rating is not rescaled
        assert tier.metrics["ypp_def"] is None
        assert tier.metrics["success_off"] is None

    def test_missing_tier(self):
        tier = resolve_tier([], None, None)
        assert isinstance(tier, MissingTier)
        assert tier.confidence == 0.0
        assert all(v is None for v in tier.metrics.values())


class TestCommitsSignal:
    def test_weighted_star_mix(self):
        record = CommitsRecord(
            team_id="A", season=2025, commits_total=10,
            five_star_commits=2, four_star_commits=3, three_star_commits=5,
        )
        assert commits_signal(record) == pytest.approx(3.7)

    def test_no_commits(self):
        assert commits_signal(None) is None
        assert commits_signal(CommitsRecord(team_id="A", season=2025)) is None


class TestFeatureLoader:
    """I/O wrapper around the resolver."""

    def test_baseline_scenario_end_to_end(self):
        reader = FakeReader(
            baselines={"A": BaselineRatingRecord("A", 2025, "v1", offense_rating=12.0)},
        )
        features = FeatureLoader(reader).load_team_features("A", 2025)
        assert features.data_source == DataSource.BASELINE
        assert features.confidence == 0.3
        assert features.ypp_off == pytest.approx(1.2)
        assert reader.baseline_versions == ["v1"]

    def test_talent_merged_into_missing_tier(self):
        """Talent is available even when on-field data is not."""
        reader = FakeReader(
            talent={"A": TalentRecord("A", 2025, talent_composite=850.0, blue_chips_pct=0.55)},
            commits={"A": CommitsRecord("A", 2025, 10, 2, 3, 5)},
            final_games={"A": 3},
        )
        features = FeatureLoader(reader).load_team_features("A", 2025)
        assert features.data_source == DataSource.MISSING
        assert features.confidence == 0.0
        assert features.talent_composite == 850.0
        assert features.blue_chips_pct == 0.55
        assert features.commits_signal == pytest.approx(3.7)
        assert features.weeks_played == 3

    def test_reader_failure_degrades_to_missing(self, caplog):
        reader = FakeReader(
            games={"A": [_game(1, ypp_off=5.0)]},
            talent={"A": TalentRecord("A", 2025, talent_composite=700.0)},
            fail_teams=("A",),
        )
        with caplog.at_level(logging.WARNING):
            features = FeatureLoader(reader).load_team_features("A", 2025)
        assert features.data_source == DataSource.MISSING
        assert features.talent_composite == 700.0
        assert "missing tier" in caplog.text

    def test_talent_failure_gives_nulls(self):
        reader = FakeReader(
            games={"A": [_game(1, ypp_off=5.0)]},
            final_games={"A": 4},
            fail_talent=("A",),
        )
        features = FeatureLoader(reader).load_team_features("A", 2025)
        assert features.data_source == DataSource.GAME
        assert features.talent_composite is None
        assert features.weeks_played == 0

    def test_require_data_raises(self):
        with pytest.raises(DataGapError, match="No usable features"):
            FeatureLoader(FakeReader()).load_team_features("A", 2025, require_data=True)

    def test_require_data_on_reader_failure(self):
        reader = FakeReader(fail_teams=("A",))
        with pytest.raises(DataGapError, match="reader failure"):
            FeatureLoader(reader).load_team_features("A", 2025, require_data=True)


class TestLoadSeason:
    """Concurrent batch loading."""

    def test_order_matches_input(self):
        team_ids = [f"T{i:02d}" for i in range(25, 0, -1)]
        reader = FakeReader(games={t: [_game(1, team_id=t, ypp_off=5.0)] for t in team_ids[::2]})
        features = FeatureLoader(reader).load_season(team_ids, 2025, max_workers=6)
        assert [f.team_id for f in features] == team_ids

    def test_one_failure_does_not_block_batch(self):
        team_ids = ["A", "B", "C"]
        reader = FakeReader(
            games={t: [_game(1, team_id=t, ypp_off=5.0)] for t in team_ids},
            fail_teams=("B",),
        )
        features = FeatureLoader(reader).load_season(team_ids, 2025, max_workers=3)
        sources = {f.team_id: f.data_source for f in features}
        assert sources == {
            "A": DataSource.GAME,
            "B": DataSource.MISSING,
            "C": DataSource.GAME,
        }

    def test_data_source_summary(self):
        reader = FakeReader(
            games={"A": [_game(1, ypp_off=5.0)]},
            seasons={"B": SeasonStatRecord("B", 2025, ypp_off=5.0)},
            baselines={"C": BaselineRatingRecord("C", 2025, "v1", offense_rating=10.0)},
        )
        features = FeatureLoader(reader).load_season(["A", "B", "C", "D", "E"], 2025)
        assert get_data_source_summary(features) == {
            "game": 1,
            "season": 1,
            "baseline": 1,
            "missing": 2,
        }
