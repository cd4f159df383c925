from sqlalchemy import Column, Integer, String, DateTime, JSON, Float, Boolean, ForeignKey, Index
from sqlalchemy.orm import declarative_base
from sqlalchemy.sql import func

Base = declarative_base()

class UsageCounter(Base):
    __tablename__ = "usage_counters"

    # usage:daily:YYYY-MM-DD, usage:monthly:YYYY-MM, usage:type:<type>:<date>, ...
    id = Column(String, primary_key=True)
    count = Column(Integer, nullable=False, default=0)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), server_default=func.now())

class SourcePriority(Base):
    __tablename__ = "source_priorities"

    data_type = Column(String, primary_key=True)
    priorities = Column(JSON, nullable=False, default=list)
    updated_at = Column(DateTime(timezone=True), server_default=func.now())

class SourceMetric(Base):
    __tablename__ = "source_metrics"

    metric_type = Column(String, primary_key=True)  # SOURCE_HOURLY, SOURCE_TOTAL, BATCH_SOURCE_*
    metric_key = Column(String, primary_key=True)
    data_type = Column(String, nullable=True)
    requests = Column(Integer, nullable=False, default=0)
    successes = Column(Integer, nullable=False, default=0)
    failures = Column(Integer, nullable=False, default=0)
    batches = Column(Integer, nullable=False, default=0)
    total_response_time = Column(Float, nullable=False, default=0.0)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), server_default=func.now())

    @property
    def success_rate(self) -> float:
        return (self.successes / self.requests * 100) if self.requests else 0.0

    @property
    def avg_response_time(self) -> float:
        return (self.total_response_time / self.requests) if self.requests else 0.0

class SourceMetricError(Base):
    __tablename__ = "source_metric_errors"

    metric_type = Column(String, primary_key=True)
    metric_key = Column(String, primary_key=True)
    error_type = Column(String, primary_key=True)
    count = Column(Integer, nullable=False, default=0)

class SymbolResult(Base):
    __tablename__ = "symbol_results"

    symbol = Column(String, primary_key=True)
    data_type = Column(String, primary_key=True)
    source = Column(String, nullable=False)
    success = Column(Boolean, nullable=False)
    response_time = Column(Float, nullable=True)
    error_message = Column(String, nullable=True)
    timestamp = Column(DateTime(timezone=True), nullable=False)

class FailureRecord(Base):
    __tablename__ = "failure_records"

    id = Column(String, primary_key=True)  # failure:<symbol>:<type>
    symbol = Column(String, index=True, nullable=False)
    data_type = Column(String, nullable=False)
    reason = Column(String, nullable=True)
    timestamp = Column(DateTime(timezone=True), nullable=False)
    date_key = Column(String, index=True, nullable=False)

class FailureCounter(Base):
    __tablename__ = "failure_counters"

    id = Column(String, primary_key=True)  # count:<dateKey>:<type>
    date_key = Column(String, index=True, nullable=False)
    data_type = Column(String, nullable=False)
    count = Column(Integer, nullable=False, default=0)

class FailureCounterMember(Base):
    __tablename__ = "failure_counter_members"

    id = Column(Integer, primary_key=True, autoincrement=True)
    counter_id = Column(String, ForeignKey("failure_counters.id", ondelete="CASCADE"), nullable=False)
    symbol = Column(String, nullable=False)
    recorded_at = Column(DateTime(timezone=True), server_default=func.now())

    __table_args__ = (
        Index("ix_failure_counter_members_counter", "counter_id", "id"),
    )

class CacheEntry(Base):
    __tablename__ = "cache_entries"

    key = Column(String, primary_key=True)
    data = Column(JSON, nullable=False)
    expires_at = Column(Integer, index=True, nullable=False)  # epoch seconds
    size = Column(Integer, nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now())

class SymbolBlacklist(Base):
    __tablename__ = "symbol_blacklist"

    symbol = Column(String, primary_key=True)
    data_type = Column(String, primary_key=True)
    failure_count = Column(Integer, nullable=False, default=0)
    reason = Column(String, nullable=True)
    first_failure = Column(DateTime(timezone=True), nullable=True)
    last_failure = Column(DateTime(timezone=True), nullable=True)
    last_success = Column(DateTime(timezone=True), nullable=True)
    cooldown_until = Column(Integer, index=True, nullable=True)  # epoch seconds
