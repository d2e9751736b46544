"""
Database Schema: SQLAlchemy Core Table Definitions

Research results and their children. Foreign keys cascade on delete, and
the repository also deletes children explicitly so engines without
enforced foreign keys (SQLite without the pragma) behave the same.
"""

from sqlalchemy import (
    JSON,
    Boolean,
    Column,
    DateTime,
    Float,
    ForeignKey,
    Index,
    Integer,
    MetaData,
    String,
    Table,
    UniqueConstraint,
    Uuid,
    func,
)

# Metadata instance for all tables
metadata = MetaData()

# Research Results Table
research_results_table = Table(
    "research_results",
    metadata,
    Column("id", Uuid, primary_key=True),
    Column("owner", String(255), nullable=False, index=True),
    Column("seed_keyword", String(200), nullable=False),
    Column("location", String(100), nullable=False),
    Column("language", String(16), nullable=False),
    Column("search_type", String(20), nullable=False, default="traditional"),
    Column("raw_snapshot", JSON),
    Column("status", String(20), nullable=False, default="running", index=True),
    Column("failed_keywords", JSON),
    Column("created_at", DateTime(timezone=True), default=func.now(), index=True),
    Column("updated_at", DateTime(timezone=True), default=func.now(), onupdate=func.now()),
    # Composite index for per-tenant history queries
    Index("idx_research_owner_created", "owner", "created_at"),
)

# Keyword Terms Table
keyword_terms_table = Table(
    "keyword_terms",
    metadata,
    Column("id", Uuid, primary_key=True),
    Column(
        "research_result_id",
        Uuid,
        ForeignKey("research_results.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    ),
    Column("keyword", String(200), nullable=False),
    Column("search_volume", Integer, nullable=False, default=0),
    Column("difficulty", Float, nullable=False, default=0.0),
    Column("competition", Float),
    Column("cpc", Float),
    Column("search_intent", String(20)),
    Column("is_related_term", Boolean, nullable=False, default=False),
    Column("parent_keyword", String(200)),
    Column("easy_win_score", Float, nullable=False, default=0.0),
    Column("high_value_score", Float, nullable=False, default=0.0),
    Column("created_at", DateTime(timezone=True), default=func.now()),
    Column("updated_at", DateTime(timezone=True), default=func.now(), onupdate=func.now()),
    # One row per normalized keyword within a research result
    UniqueConstraint("research_result_id", "keyword", name="uq_terms_result_keyword"),
    Index("idx_terms_result_volume", "research_result_id", "search_volume"),
)

# Keyword Clusters Table
keyword_clusters_table = Table(
    "keyword_clusters",
    metadata,
    Column("id", Uuid, primary_key=True),
    Column(
        "research_result_id",
        Uuid,
        ForeignKey("research_results.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    ),
    Column("parent_topic", String(200), nullable=False),
    Column("pillar_term_id", Uuid, nullable=False),
    Column("cluster_type", String(20), nullable=False),
    Column("authority_potential_score", Float, nullable=False, default=0.0),
    Column("aggregate_search_volume", Integer, nullable=False, default=0),
    Column("avg_difficulty", Float, nullable=False, default=0.0),
    Column("easy_win_count", Integer, nullable=False, default=0),
    Column("high_value_count", Integer, nullable=False, default=0),
    Column("position", Integer, nullable=False, default=0),
    Column("created_at", DateTime(timezone=True), default=func.now()),
)

# Cluster Members Table (join between clusters and terms)
cluster_members_table = Table(
    "cluster_members",
    metadata,
    Column(
        "cluster_id",
        Uuid,
        ForeignKey("keyword_clusters.id", ondelete="CASCADE"),
        primary_key=True,
    ),
    Column(
        "term_id",
        Uuid,
        ForeignKey("keyword_terms.id", ondelete="CASCADE"),
        primary_key=True,
    ),
    Column("role", String(20), nullable=False),
    Column("position", Integer, nullable=False, default=0),
    Index("idx_members_term", "term_id"),
)
