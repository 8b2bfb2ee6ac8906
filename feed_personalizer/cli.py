"""
CLI: Command Line Interface for Feed Personalizer

支援 init-config、init-db、feed、digest、interact 命令 (僅 postgres 後端)。
"""

import click
import logging
from pathlib import Path

from feed_personalizer.config import FeedPersonalizerConfig
from feed_personalizer.models import Reaction
from feed_personalizer.processing.affinity import AffinityUpdateEngine
from feed_personalizer.processing.feed_assembler import FeedAssembler
from feed_personalizer.processing.interactions import InteractionService
from feed_personalizer.storage.memory_store import MemoryStore
from feed_personalizer.storage.pg_store import PostgresStore

logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)


@click.group()
def cli():
    """Personalized feed ranking CLI"""
    pass


@cli.command()
@click.option('--out', default='config.example.yaml', help='Output config file path')
def init_config(out: str):
    """產生範本設定檔"""
    example_path = Path(__file__).parent.parent / 'config.example.yaml'

    if example_path.exists():
        with open(example_path, 'r', encoding='utf-8') as f:
            content = f.read()
    else:
        # Minimal fallback
        content = """# Feed Personalizer Configuration
storage:
  backend: postgres
  postgres_dsn: FEED_PERSONALIZER_DSN
"""

    with open(out, 'w', encoding='utf-8') as f:
        f.write(content)

    click.echo(f"✓ Config file created: {out}")
    click.echo(f"  Edit this file and run: python -m feed_personalizer feed --config {out} --user <id>")


@cli.command()
@click.option('--config', required=True, help='Config YAML file path')
def init_db(config: str):
    """建立 Postgres schema"""
    cfg = FeedPersonalizerConfig.from_yaml(config)
    # PostgresStore 建立時即初始化 schema (auto_init_schema=True)
    store = initialize_storage(cfg, require_persistent=True)
    store.close()
    click.echo("✓ Schema ready")


@cli.command()
@click.option('--config', required=True, help='Config YAML file path')
@click.option('--user', 'user_id', required=True, help='User ID')
def feed(config: str, user_id: str):
    """取得 (或建立) 今天的 feed"""
    cfg = FeedPersonalizerConfig.from_yaml(config)
    store = initialize_storage(cfg, require_persistent=True)
    try:
        assembler = build_assembler(store, cfg)
        articles = assembler.get_or_create_daily_feed(user_id)
        echo_articles(f"Today's feed for {user_id}", articles, store)
    finally:
        store.close()


@cli.command()
@click.option('--config', required=True, help='Config YAML file path')
@click.option('--user', 'user_id', required=True, help='User ID')
def digest(config: str, user_id: str):
    """每週 digest 選文 (不寫入 snapshot)"""
    cfg = FeedPersonalizerConfig.from_yaml(config)
    store = initialize_storage(cfg, require_persistent=True)
    try:
        assembler = build_assembler(store, cfg)
        articles = assembler.select_weekly_digest(user_id)
        echo_articles(f"Weekly digest for {user_id}", articles, store)
    finally:
        store.close()


@cli.command()
@click.option('--config', required=True, help='Config YAML file path')
@click.option('--user', 'user_id', required=True, help='User ID')
@click.option('--item', 'item_id', required=True, help='Content item ID')
@click.option('--dwell', 'dwell_time_ms', required=True, type=click.IntRange(min=0), help='Dwell time (ms)')
@click.option('--reaction', type=click.Choice([r.value for r in Reaction]), default=Reaction.NONE.value)
def interact(config: str, user_id: str, item_id: str, dwell_time_ms: int, reaction: str):
    """記錄一次 engagement 並更新 topic affinity"""
    cfg = FeedPersonalizerConfig.from_yaml(config)
    store = initialize_storage(cfg, require_persistent=True)
    try:
        engine = AffinityUpdateEngine(store, store, cfg.affinity)
        service = InteractionService(store, store, engine)
        report = service.record_engagement(user_id, item_id, dwell_time_ms, reaction)

        click.echo(f"✓ Recorded {report.interaction_type} for item {item_id}")
        for topic in report.topics:
            if topic.skipped:
                click.echo(f"  {topic.topic_id}: skipped (weight={topic.weight:.4f})")
            else:
                click.echo(f"  {topic.topic_id}: {topic.previous_score:.4f} -> {topic.new_score:.4f} " +
                           f"(weight={topic.weight:.4f})")
    finally:
        store.close()


def initialize_storage(cfg: FeedPersonalizerConfig, require_persistent: bool = False):
    """初始化儲存後端（fail fast，不 fallback）"""
    if cfg.storage.backend == "postgres":
        dsn = cfg.get_postgres_dsn()
        if not dsn:
            raise ValueError(
                f"Postgres backend requires the environment variable named by storage.postgres_dsn "
                f"({cfg.storage.postgres_dsn!r})"
            )

        logger.info("Initializing Postgres storage...")
        return PostgresStore(
            dsn,
            auto_init_schema=True,
            min_conn=cfg.storage.pool_min_conn,
            max_conn=cfg.storage.pool_max_conn,
            insert_retry_attempts=cfg.storage.insert_retry_attempts,
        )

    elif cfg.storage.backend == "memory":
        if require_persistent:
            raise click.UsageError("The memory backend keeps no state between runs; configure storage.backend=postgres")
        logger.info("Using in-memory storage backend")
        return MemoryStore()

    else:
        raise ValueError(f"Unsupported storage backend: {cfg.storage.backend}")


def build_assembler(store, cfg: FeedPersonalizerConfig) -> FeedAssembler:
    """以同一個 store 實作四個介面組出 FeedAssembler"""
    return FeedAssembler(
        content_store=store,
        interaction_log=store,
        affinity_store=store,
        snapshot_store=store,
        config=cfg,
    )


def echo_articles(title: str, articles, store):
    click.echo("=" * 60)
    click.echo(title)
    click.echo("=" * 60)
    if not articles:
        click.echo("(no articles)")
        return
    topic_ids = sorted({t for article in articles for t in article.topic_ids})
    names = {topic.id: topic.name for topic in store.get_topics(topic_ids)}
    for i, article in enumerate(articles, 1):
        topics = ', '.join(names.get(t, t) for t in sorted(article.topic_ids))
        click.echo(f"  {i}. [{article.id}] {article.title} " +
                   f"(relevance={article.relevance_score:.0f}, topics=[{topics}])")


if __name__ == "__main__":
    cli()
