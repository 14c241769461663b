import argparse
import atexit
import json
import logging
from pathlib import Path

from tqdm import tqdm

from .catalog import ProtocolCatalog, load_catalog
from .collaborative import ProfileNeighborSource
from .config import CATALOG_PATH, CHURN_DEFAULT_LIMIT, FEEDBACK_RETENTION_LIMIT, FORECAST_DEFAULT_HORIZON
from .database import (
    init_db, close_pool, load_feedback, save_feedback_batch, count_feedback,
    clear_feedback, load_protocols, save_protocols, SqliteFeedbackSink,
)
from .engine import RecommendationEngine
from .errors import RecommenderError, ValidationError
from .feedback import FeedbackStore, UserFeedback
from .forecast import UserActivity
from .profile import RecommendationContext, UserProfile

logger = logging.getLogger(__name__)

# Register cleanup on exit
atexit.register(close_pool)


def _read_json(path: str):
    try:
        return json.loads(Path(path).read_text())
    except FileNotFoundError:
        raise ValidationError(f"File not found: {path}") from None
    except json.JSONDecodeError as e:
        raise ValidationError(f"Invalid JSON in {path}: {e}") from None


def _load_catalog() -> ProtocolCatalog:
    """Catalog from PROTOCOL_REC_CATALOG, else the stored catalog, else the defaults."""
    if CATALOG_PATH:
        return load_catalog(CATALOG_PATH)
    stored = load_protocols()
    if stored:
        logger.debug(f"Using {len(stored)} protocols stored in the database")
        return ProtocolCatalog(stored)
    return ProtocolCatalog()


def _build_engine(sink: SqliteFeedbackSink | None = None, neighbors_file: str | None = None) -> RecommendationEngine:
    """Fresh engine with the durable feedback log replayed into it."""
    init_db()
    entries = load_feedback(limit=FEEDBACK_RETENTION_LIMIT)

    neighbor_source = None
    if neighbors_file:
        payload = _read_json(neighbors_file)
        profiles = [UserProfile.from_dict(p) for p in payload]
        neighbor_source = ProfileNeighborSource(profiles, entries)
        logger.debug(f"Loaded {len(profiles)} neighbour profiles")

    engine = RecommendationEngine(
        catalog=_load_catalog(),
        store=FeedbackStore(sink=sink),
        neighbor_source=neighbor_source,
    )
    engine.replay(entries)
    return engine


def cmd_recommend(args: argparse.Namespace) -> None:
    """Rank protocols for a user profile."""
    context = RecommendationContext.from_dict(_read_json(args.profile))
    engine = _build_engine(neighbors_file=args.neighbors)
    recs = engine.recommend(context, max_results=args.max, use_learning=not args.no_learning)

    if args.json:
        print(json.dumps([r.to_dict() for r in recs], indent=2))
        return

    logger.info(f"\nTop {len(recs)} protocols for {context.profile.id}:\n")
    for i, rec in enumerate(recs, 1):
        protocol = engine.catalog.get(rec.protocol_id)
        logger.info(
            f"{i:2}. {protocol.name} ({rec.protocol_id}) "
            f"score={rec.score:.3f} confidence={rec.confidence:.2f} "
            f"g-maxing={rec.gmaxing_compatibility:.2f}"
        )
        for reason in rec.reasons:
            logger.info(f"      - {reason}")


def cmd_feedback(args: argparse.Namespace) -> None:
    """Record one feedback entry and persist it."""
    sink = SqliteFeedbackSink()
    try:
        engine = _build_engine(sink=sink)
        stored = engine.record(UserFeedback(
            user_id=args.user,
            protocol_id=args.protocol,
            rating=args.rating,
            completed=args.completed,
            effectiveness=args.effectiveness,
            difficulty=args.difficulty,
            enjoyment=args.enjoyment,
        ))
        sink.flush()
    finally:
        sink.close()

    metrics = engine.metrics_of(stored.protocol_id)
    logger.info(f"Recorded feedback from {stored.user_id} for {stored.protocol_id}")
    logger.info(
        f"  {stored.protocol_id}: avg rating {metrics.avg_rating:.2f}, "
        f"completion {metrics.completion_rate:.0%}, "
        f"effectiveness {metrics.effectiveness_score:.1f} "
        f"({metrics.total_feedbacks} feedbacks)"
    )
    factors = engine.factors_for(stored.user_id)
    if factors:
        logger.info(f"  Personalization: {', '.join(f'{k}={v}' for k, v in sorted(factors.items()))}")


def cmd_import_feedback(args: argparse.Namespace) -> None:
    """Bulk-import feedback entries from a JSON list."""
    init_db()
    payload = _read_json(args.file)
    catalog = _load_catalog()

    valid = []
    skipped = 0
    for row in tqdm(payload, desc="Feedback"):
        try:
            feedback = UserFeedback.from_dict(row)
        except ValidationError as e:
            logger.warning(f"Skipping feedback row: {e}")
            skipped += 1
            continue
        if feedback.protocol_id not in catalog:
            logger.warning(f"Skipping feedback for unknown protocol {feedback.protocol_id}")
            skipped += 1
            continue
        valid.append(feedback)

    imported = save_feedback_batch(valid)
    logger.info(f"Imported {imported} feedback entries ({skipped} skipped), {count_feedback()} in log")


def cmd_predict(args: argparse.Namespace) -> None:
    """Predict a user's satisfaction with a protocol."""
    engine = _build_engine()
    prediction = engine.predict(args.user, args.protocol)
    logger.info(
        f"{args.user} / {args.protocol}: predicted rating {prediction.predicted_rating:.2f}/5 "
        f"(confidence {prediction.confidence:.2f})"
    )
    for factor in prediction.factors:
        logger.info(f"  - {factor}")


def cmd_insights(args: argparse.Namespace) -> None:
    """Summarize a user's feedback history."""
    engine = _build_engine()
    insights = engine.user_insights(args.user)
    logger.info(f"\nInsights for {args.user}:")
    logger.info(f"  Feedbacks: {insights.total_feedbacks}")
    logger.info(f"  Average rating: {insights.average_rating:.2f}")
    logger.info(f"  Completion rate: {insights.completion_rate:.0%}")
    logger.info(f"  Preferred difficulty: {insights.preferred_difficulty}")
    if insights.top_protocols:
        logger.info(f"  Top protocols: {', '.join(insights.top_protocols)}")
    for suggestion in insights.suggestions:
        logger.info(f"  * {suggestion}")


def cmd_forecast(args: argparse.Namespace) -> None:
    """Extrapolate a monthly series."""
    engine = RecommendationEngine()
    points = engine.forecast_series(args.values, horizon=args.horizon, users=args.users)
    label = "users" if args.users else "value"
    for point in points:
        value = f"{point.predicted_value:.0f}" if args.users else f"{point.predicted_value:.2f}"
        logger.info(f"  {point.period}: {label} {value} (confidence {point.confidence:.2f})")


def cmd_churn(args: argparse.Namespace) -> None:
    """Rank users at risk of churning from an activity export."""
    users = [UserActivity.from_dict(row) for row in _read_json(args.file)]
    engine = RecommendationEngine()
    entries = engine.churn_risk(users, limit=args.limit)
    if not entries:
        logger.info("No users at risk")
        return
    logger.info(f"\n{len(entries)} users at risk:")
    for entry in entries:
        reasons = f" ({', '.join(entry.reasons)})" if entry.reasons else ""
        logger.info(f"  {entry.user_id}: risk {entry.risk_score:.0f}{reasons}")


def cmd_export(args: argparse.Namespace) -> None:
    """Export the learning state as JSON."""
    engine = _build_engine()
    snapshot = engine.export_snapshot()
    text = json.dumps(snapshot, indent=2)
    if args.output:
        Path(args.output).write_text(text)
        logger.info(f"Exported {snapshot['total_feedbacks']} feedbacks to {args.output}")
    else:
        print(text)


def cmd_catalog(args: argparse.Namespace) -> None:
    """List the catalog, optionally storing it in the database."""
    init_db()
    catalog = _load_catalog()
    for protocol in catalog.list_protocols():
        logger.info(
            f"  {protocol.id}: {protocol.name} [{protocol.category.value}, {protocol.difficulty.value}] "
            f"{protocol.duration_weeks} weeks, {protocol.sessions_per_week}x/week"
        )
    if args.save:
        saved = save_protocols(catalog.list_protocols())
        logger.info(f"Stored {saved} protocols in the database")


def cmd_reset(args: argparse.Namespace) -> None:
    """Delete the durable feedback log."""
    init_db()
    removed = clear_feedback()
    logger.info(f"Removed {removed} feedback entries")


def main():
    parser = argparse.ArgumentParser(description="Training protocol recommender")
    parser.add_argument("--verbose", "-v", action="store_true", help="Enable verbose logging")
    subparsers = parser.add_subparsers(dest="command", required=True)

    recommend_parser = subparsers.add_parser("recommend", help="Rank protocols for a profile")
    recommend_parser.add_argument("profile", help="JSON file with a profile or recommendation context")
    recommend_parser.add_argument("--max", type=int, default=5, help="Number of protocols to return")
    recommend_parser.add_argument("--no-learning", action="store_true",
                                  help="Ignore adapted weights, personalization and satisfaction re-ranking")
    recommend_parser.add_argument("--neighbors", help="JSON file with profiles of other users")
    recommend_parser.add_argument("--json", action="store_true", help="Print results as JSON")
    recommend_parser.set_defaults(func=cmd_recommend)

    feedback_parser = subparsers.add_parser("feedback", help="Record post-session feedback")
    feedback_parser.add_argument("user", help="User id")
    feedback_parser.add_argument("protocol", help="Protocol id")
    feedback_parser.add_argument("--rating", type=float, required=True, help="Overall rating (1-5)")
    feedback_parser.add_argument("--effectiveness", type=float, required=True, help="Effectiveness (1-10)")
    feedback_parser.add_argument("--difficulty", type=float, required=True, help="Perceived difficulty (1-10)")
    feedback_parser.add_argument("--enjoyment", type=float, required=True, help="Enjoyment (1-10)")
    feedback_parser.add_argument("--completed", action="store_true", help="Protocol was completed")
    feedback_parser.set_defaults(func=cmd_feedback)

    import_parser = subparsers.add_parser("import-feedback", help="Import feedback from a JSON list")
    import_parser.add_argument("file", help="JSON file")
    import_parser.set_defaults(func=cmd_import_feedback)

    predict_parser = subparsers.add_parser("predict", help="Predict satisfaction")
    predict_parser.add_argument("user", help="User id")
    predict_parser.add_argument("protocol", help="Protocol id")
    predict_parser.set_defaults(func=cmd_predict)

    insights_parser = subparsers.add_parser("insights", help="Show a user's feedback insights")
    insights_parser.add_argument("user", help="User id")
    insights_parser.set_defaults(func=cmd_insights)

    forecast_parser = subparsers.add_parser("forecast", help="Forecast a monthly series")
    forecast_parser.add_argument("values", type=float, nargs="+", help="Historical values, oldest first")
    forecast_parser.add_argument("--horizon", type=int, default=FORECAST_DEFAULT_HORIZON,
                                 help=f"Months to forecast (default: {FORECAST_DEFAULT_HORIZON})")
    forecast_parser.add_argument("--users", action="store_true", help="Round predictions to whole users")
    forecast_parser.set_defaults(func=cmd_forecast)

    churn_parser = subparsers.add_parser("churn", help="Rank users by churn risk")
    churn_parser.add_argument("file", help="JSON file with user activity records")
    churn_parser.add_argument("--limit", type=int, default=CHURN_DEFAULT_LIMIT, help="Users to show")
    churn_parser.set_defaults(func=cmd_churn)

    export_parser = subparsers.add_parser("export", help="Export learning state")
    export_parser.add_argument("--output", "-o", help="Write to this file instead of stdout")
    export_parser.set_defaults(func=cmd_export)

    catalog_parser = subparsers.add_parser("catalog", help="List protocols")
    catalog_parser.add_argument("--save", action="store_true", help="Store the catalog in the database")
    catalog_parser.set_defaults(func=cmd_catalog)

    reset_parser = subparsers.add_parser("reset", help="Delete all recorded feedback")
    reset_parser.set_defaults(func=cmd_reset)

    args = parser.parse_args()

    # Configure logging based on verbosity
    log_level = logging.DEBUG if args.verbose else logging.INFO
    logging.basicConfig(
        level=log_level,
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
    )

    try:
        args.func(args)
    except RecommenderError as e:
        logger.error(str(e))
        raise SystemExit(1)


if __name__ == "__main__":
    main()
