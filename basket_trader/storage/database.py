"""Database storage for ledger, risk and portfolio state."""
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, List, Optional

from sqlalchemy import JSON, Boolean, Column, DateTime, Integer, Numeric, String, select
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.orm import declarative_base

from basket_trader.core.config import database_config
from basket_trader.core.models import (Alert, AlertLevel, Position, PositionStatus,
                                       TradeAction, TradeRecord)

Base = declarative_base()

OPEN_STATUSES = (PositionStatus.EXECUTED.value, PositionStatus.SIMULATED.value)


class PositionModel(Base):
    """SQLAlchemy model for ledger positions."""
    __tablename__ = 'positions'

    id = Column(String, primary_key=True)
    token = Column(String, nullable=False, index=True)
    action = Column(String, nullable=False)
    status = Column(String, nullable=False, index=True)
    quantity = Column(Numeric(36, 18), nullable=False)
    entry_price = Column(Numeric(36, 18), nullable=True)
    stop_loss = Column(Numeric(36, 18), nullable=True)
    take_profit = Column(Numeric(36, 18), nullable=True)
    realized_pnl = Column(Numeric(36, 18), nullable=True)
    opened_at = Column(DateTime, default=datetime.utcnow)
    closed_at = Column(DateTime, nullable=True)
    # Full position document, including the opening signal
    data_json = Column(JSON, nullable=False)


class TradeHistoryModel(Base):
    """SQLAlchemy model for executions appended to the trading history."""
    __tablename__ = 'trade_history'

    id = Column(String, primary_key=True)
    position_id = Column(String, nullable=False, index=True)
    token = Column(String, nullable=False)
    action = Column(String, nullable=False)
    kind = Column(String, nullable=False)
    quantity = Column(Numeric(36, 18), nullable=False)
    reference_price = Column(Numeric(36, 18), nullable=False)
    execution_price = Column(Numeric(36, 18), nullable=True)
    status = Column(String, nullable=False)
    realized_pnl = Column(Numeric(36, 18), nullable=True)
    reason = Column(String, default="")
    simulated = Column(Boolean, default=True)
    timestamp = Column(DateTime, default=datetime.utcnow)


class AlertModel(Base):
    """SQLAlchemy model for risk alerts."""
    __tablename__ = 'alerts'

    id = Column(String, primary_key=True)
    timestamp = Column(DateTime, nullable=False)
    level = Column(String, nullable=False)
    type = Column(String, nullable=False)
    message = Column(String, nullable=False)
    acknowledged = Column(Boolean, default=False)


class PortfolioSnapshotModel(Base):
    """SQLAlchemy model for periodic portfolio snapshots."""
    __tablename__ = 'portfolio_snapshots'

    id = Column(Integer, primary_key=True, autoincrement=True)
    timestamp = Column(DateTime, default=datetime.utcnow, index=True)
    total_value = Column(Numeric(36, 18), nullable=False)
    cash = Column(Numeric(36, 18), nullable=False)
    data_json = Column(JSON, nullable=False)


class ConfigModel(Base):
    """Key/value store for runtime configuration such as target allocations."""
    __tablename__ = 'config'

    key = Column(String, primary_key=True)
    value_json = Column(JSON, nullable=False)
    updated_at = Column(DateTime, default=datetime.utcnow)


class Database:
    """Async database interface."""

    def __init__(self, database_url: Optional[str] = None):
        # Convert SQLite URL to async version if needed
        db_url = database_url or database_config.database_url
        if db_url.startswith('sqlite:///') and not db_url.startswith('sqlite+aiosqlite:///'):
            db_url = db_url.replace('sqlite:///', 'sqlite+aiosqlite:///')

        db_path = db_url.split(':///', 1)[-1] if db_url.startswith('sqlite') else ''
        if db_path and db_path != ':memory:':
            Path(db_path).parent.mkdir(parents=True, exist_ok=True)

        self.database_url = db_url
        self.engine: AsyncEngine = create_async_engine(db_url, echo=False)
        self.session_maker = async_sessionmaker(self.engine, class_=AsyncSession)

    async def initialize(self):
        """Create tables."""
        async with self.engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)

    async def close(self):
        """Close database connection."""
        await self.engine.dispose()

    # Position operations
    async def save_position(self, position: Position):
        """Save or update a position."""
        async with self.session_maker() as session:
            db_position = await session.get(PositionModel, position.id)

            if db_position is None:
                db_position = PositionModel(
                    id=position.id,
                    token=position.token,
                    action=position.action.value,
                    opened_at=position.opened_at,
                )
                session.add(db_position)

            db_position.status = position.status.value
            db_position.quantity = position.quantity
            db_position.entry_price = position.entry_price
            db_position.stop_loss = position.stop_loss
            db_position.take_profit = position.take_profit
            db_position.realized_pnl = position.realized_pnl
            db_position.closed_at = position.closed_at
            db_position.data_json = position.model_dump(mode="json")

            await session.commit()

    async def get_position(self, position_id: str) -> Optional[Position]:
        """Get a position by ID."""
        async with self.session_maker() as session:
            db_position = await session.get(PositionModel, position_id)

            if db_position is None:
                return None

            return self._position_from_model(db_position)

    async def get_open_positions(self) -> List[Position]:
        """Get all positions still holding exposure."""
        async with self.session_maker() as session:
            result = await session.execute(
                select(PositionModel)
                .where(PositionModel.status.in_(OPEN_STATUSES))
                .order_by(PositionModel.opened_at)
            )
            db_positions = result.scalars().all()

            return [self._position_from_model(p) for p in db_positions]

    # Trade history operations
    async def append_trade(self, record: TradeRecord):
        """Append one execution to the trading history."""
        async with self.session_maker() as session:
            session.add(TradeHistoryModel(
                id=record.id,
                position_id=record.position_id,
                token=record.token,
                action=record.action.value,
                kind=record.kind,
                quantity=record.quantity,
                reference_price=record.reference_price,
                execution_price=record.execution_price,
                status=record.status.value,
                realized_pnl=record.realized_pnl,
                reason=record.reason,
                simulated=record.simulated,
                timestamp=record.timestamp,
            ))
            await session.commit()

    async def get_trades(self, token: Optional[str] = None, limit: int = 100) -> List[TradeRecord]:
        """Get the most recent trades, newest first."""
        async with self.session_maker() as session:
            query = select(TradeHistoryModel).order_by(TradeHistoryModel.timestamp.desc()).limit(limit)

            if token:
                query = query.where(TradeHistoryModel.token == token)

            result = await session.execute(query)
            return [self._trade_from_model(t) for t in result.scalars().all()]

    # Alert operations
    async def save_alert(self, alert: Alert):
        """Save or update an alert."""
        async with self.session_maker() as session:
            db_alert = await session.get(AlertModel, alert.id)

            if db_alert is None:
                db_alert = AlertModel(
                    id=alert.id,
                    timestamp=alert.timestamp,
                    level=alert.level.value,
                    type=alert.type,
                    message=alert.message,
                )
                session.add(db_alert)

            db_alert.acknowledged = alert.acknowledged
            await session.commit()

    async def get_alerts(self, limit: int = 50, unacknowledged_only: bool = False) -> List[Alert]:
        """Get alerts, newest first."""
        async with self.session_maker() as session:
            query = select(AlertModel).order_by(AlertModel.timestamp.desc()).limit(limit)

            if unacknowledged_only:
                query = query.where(AlertModel.acknowledged.is_(False))

            result = await session.execute(query)
            return [
                Alert(
                    id=a.id,
                    timestamp=a.timestamp,
                    level=AlertLevel(a.level),
                    type=a.type,
                    message=a.message,
                    acknowledged=a.acknowledged,
                )
                for a in result.scalars().all()
            ]

    # Portfolio snapshot operations
    async def save_snapshot(self, summary: Dict[str, Any]):
        """Append a portfolio summary to the snapshot history."""
        async with self.session_maker() as session:
            session.add(PortfolioSnapshotModel(
                timestamp=datetime.utcnow(),
                total_value=summary.get('total_value', 0),
                cash=summary.get('cash', 0),
                data_json=summary,
            ))
            await session.commit()

    async def get_latest_snapshot(self) -> Optional[Dict[str, Any]]:
        async with self.session_maker() as session:
            result = await session.execute(
                select(PortfolioSnapshotModel)
                .order_by(PortfolioSnapshotModel.id.desc())
                .limit(1)
            )
            snapshot = result.scalar_one_or_none()
            if snapshot is None:
                return None
            return dict(snapshot.data_json)

    # Config operations
    async def set_config(self, key: str, value: Any):
        """Store a JSON-serializable config value."""
        async with self.session_maker() as session:
            entry = await session.get(ConfigModel, key)
            if entry is None:
                entry = ConfigModel(key=key, value_json=value)
                session.add(entry)
            else:
                entry.value_json = value
            entry.updated_at = datetime.utcnow()
            await session.commit()

    async def get_config(self, key: str, default: Any = None) -> Any:
        async with self.session_maker() as session:
            entry = await session.get(ConfigModel, key)
            return default if entry is None else entry.value_json

    # Helpers
    def _position_from_model(self, model: PositionModel) -> Position:
        """Convert DB model to Position object."""
        return Position.model_validate(model.data_json)

    def _trade_from_model(self, model: TradeHistoryModel) -> TradeRecord:
        """Convert DB model to TradeRecord object."""
        return TradeRecord(
            id=model.id,
            position_id=model.position_id,
            token=model.token,
            action=TradeAction(model.action),
            kind=model.kind,
            quantity=model.quantity,
            reference_price=model.reference_price,
            execution_price=model.execution_price,
            status=PositionStatus(model.status),
            realized_pnl=model.realized_pnl,
            reason=model.reason or "",
            simulated=model.simulated,
            timestamp=model.timestamp,
        )
