from sqlalchemy import Column, Integer, BigInteger, Boolean, Float, Date, DateTime, ForeignKey, Text, Index, UniqueConstraint, Uuid
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func
from core.database import Base
import uuid
from typing import Optional
from datetime import datetime, timezone


def as_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Treat naive datetimes (SQLite round-trips) as UTC."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


class Athlete(Base):
    __tablename__ = "athlete"

    id = Column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    email = Column(Text, unique=True, nullable=True)
    password_hash = Column(Text, nullable=True)
    display_name = Column(Text, nullable=True)
    birthdate = Column(Date, nullable=True)
    sex = Column(Text, nullable=True)  # 'M' | 'F'
    role = Column(Text, default="athlete", nullable=False)  # athlete | admin

    # --- PHYSIOLOGY ---
    max_hr = Column(Integer, nullable=True)
    resting_hr = Column(Integer, nullable=True)
    vdot = Column(Float, nullable=True)
    threshold_pace_per_mile = Column(Float, nullable=True)  # seconds/mile
    threshold_confidence = Column(Float, nullable=True)

    # --- STRAVA ---
    # Tokens are stored encrypted (enc:v1:...) by services.token_encryption.
    strava_athlete_id = Column(BigInteger, unique=True, nullable=True)
    strava_access_token = Column(Text, nullable=True)
    strava_refresh_token = Column(Text, nullable=True)
    strava_token_expires_at = Column(DateTime(timezone=True), nullable=True)
    strava_auto_sync = Column(Boolean, default=False, nullable=False)
    last_strava_sync = Column(DateTime(timezone=True), nullable=True)

    activities = relationship("Activity", back_populates="athlete", cascade="all, delete-orphan")
    race_results = relationship("RaceResult", back_populates="athlete", cascade="all, delete-orphan")

    @property
    def has_strava_connection(self) -> bool:
        return bool(self.strava_athlete_id and self.strava_access_token)


class Activity(Base):
    """A single workout (manual entry or synced from Strava)."""
    __tablename__ = "activity"

    id = Column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    athlete_id = Column(Uuid(as_uuid=True), ForeignKey("athlete.id"), nullable=False)
    name = Column(Text, nullable=True)
    start_time = Column(DateTime(timezone=True), nullable=False)
    local_date = Column(Date, nullable=True)  # athlete-local calendar day
    sport = Column(Text, default="run", nullable=False)
    source = Column(Text, default="manual", nullable=False)  # 'manual' | 'strava'
    provider = Column(Text, nullable=True)
    external_activity_id = Column(Text, nullable=True)

    duration_s = Column(Integer, nullable=True)
    distance_m = Column(Float, nullable=True)
    avg_hr = Column(Integer, nullable=True)
    max_hr = Column(Integer, nullable=True)
    total_elevation_gain = Column(Float, nullable=True)  # meters

    # recovery | easy | long | steady | tempo | interval | race | cross_train | other
    workout_type = Column(Text, default="easy", nullable=False)
    strava_workout_type = Column(Integer, nullable=True)

    temperature_f = Column(Float, nullable=True)
    humidity_pct = Column(Float, nullable=True)

    best_efforts_extracted_at = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)

    athlete = relationship("Athlete", back_populates="activities")
    splits = relationship(
        "ActivitySplit",
        back_populates="activity",
        cascade="all, delete-orphan",
        order_by="ActivitySplit.split_number",
    )

    __table_args__ = (
        Index("ix_activity_athlete_start", "athlete_id", "start_time"),
        UniqueConstraint("provider", "external_activity_id", name="uq_activity_provider_external_id"),
    )

    @property
    def activity_date(self):
        if self.local_date is not None:
            return self.local_date
        return as_utc(self.start_time).date()

    @property
    def distance_miles(self) -> Optional[float]:
        if not self.distance_m:
            return None
        return float(self.distance_m) / 1609.34

    @property
    def pace_per_mile(self) -> Optional[float]:
        """Average pace in seconds per mile."""
        miles = self.distance_miles
        if not miles or not self.duration_s:
            return None
        return self.duration_s / miles

    @property
    def elevation_gain_ft(self) -> Optional[float]:
        if self.total_elevation_gain is None:
            return None
        return float(self.total_elevation_gain) * 3.28084


class ActivitySplit(Base):
    """A lap or split within an activity."""
    __tablename__ = "activity_split"

    id = Column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    activity_id = Column(Uuid(as_uuid=True), ForeignKey("activity.id"), nullable=False)
    split_number = Column(Integer, nullable=False)
    distance = Column(Float, nullable=True)  # meters
    elapsed_time = Column(Integer, nullable=True)
    moving_time = Column(Integer, nullable=True)
    average_heartrate = Column(Integer, nullable=True)
    max_heartrate = Column(Integer, nullable=True)
    lap_type = Column(Text, nullable=True)  # warmup | work | recovery | cooldown | steady

    activity = relationship("Activity", back_populates="splits")

    __table_args__ = (
        Index("ix_activity_split_activity_id", "activity_id"),
        UniqueConstraint('activity_id', 'split_number', name='uq_activity_split_number'),
    )

    @property
    def pace_per_mile(self) -> Optional[float]:
        seconds = self.moving_time or self.elapsed_time
        if not self.distance or not seconds:
            return None
        return seconds / (float(self.distance) / 1609.34)


class BestEffort(Base):
    """
    Strava best effort for a standard distance within an activity.

    Every effort is kept, not just the fastest; PersonalBest is derived.
    """
    __tablename__ = "best_effort"

    id = Column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    athlete_id = Column(Uuid(as_uuid=True), ForeignKey("athlete.id"), nullable=False)
    activity_id = Column(Uuid(as_uuid=True), ForeignKey("activity.id", ondelete="CASCADE"), nullable=False)
    distance_category = Column(Text, nullable=False)
    distance_meters = Column(Integer, nullable=False)
    elapsed_time = Column(Integer, nullable=False)  # seconds
    achieved_at = Column(DateTime(timezone=True), nullable=False)
    strava_effort_id = Column(BigInteger, nullable=True)
    pr_rank = Column(Integer, nullable=True)  # Strava's own rank (1 = PR at the time)

    __table_args__ = (
        Index("ix_best_effort_athlete_id", "athlete_id"),
        Index("ix_best_effort_activity_id", "activity_id"),
        Index("ix_best_effort_distance_category", "distance_category"),
        UniqueConstraint('activity_id', 'strava_effort_id', name='uq_best_effort_activity_strava'),
    )


class RaceResult(Base):
    __tablename__ = "race_result"

    id = Column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    athlete_id = Column(Uuid(as_uuid=True), ForeignKey("athlete.id"), nullable=False)
    activity_id = Column(Uuid(as_uuid=True), ForeignKey("activity.id", ondelete="SET NULL"), nullable=True)
    race_name = Column(Text, nullable=True)
    distance_label = Column(Text, nullable=False)  # '5K', '10K', 'half_marathon', ...
    distance_meters = Column(Integer, nullable=False)
    finish_time_seconds = Column(Integer, nullable=False)
    date = Column(Date, nullable=False)
    calculated_vdot = Column(Float, nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)

    athlete = relationship("Athlete", back_populates="race_results")

    __table_args__ = (
        Index("ix_race_result_athlete_date", "athlete_id", "date"),
    )


class PersonalBest(Base):
    """Fastest known time per distance category, regenerated from all sources."""
    __tablename__ = "personal_best"

    id = Column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    athlete_id = Column(Uuid(as_uuid=True), ForeignKey("athlete.id"), nullable=False)
    distance_category = Column(Text, nullable=False)
    distance_meters = Column(Integer, nullable=False)
    time_seconds = Column(Integer, nullable=False)
    pace_per_mile = Column(Float, nullable=True)
    achieved_at = Column(DateTime(timezone=True), nullable=False)
    source = Column(Text, nullable=False)  # 'strava' | 'race' | 'workout'
    activity_id = Column(Uuid(as_uuid=True), ForeignKey("activity.id", ondelete="SET NULL"), nullable=True)
    race_result_id = Column(Uuid(as_uuid=True), ForeignKey("race_result.id", ondelete="SET NULL"), nullable=True)

    __table_args__ = (
        Index("ix_personal_best_athlete_id", "athlete_id"),
        UniqueConstraint('athlete_id', 'distance_category', name='uq_personal_best_athlete_distance'),
    )


class VdotHistory(Base):
    """One VDOT snapshot per athlete per calendar month."""
    __tablename__ = "vdot_history"

    id = Column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    athlete_id = Column(Uuid(as_uuid=True), ForeignKey("athlete.id"), nullable=False)
    date = Column(Date, nullable=False)  # first day of the month
    vdot = Column(Float, nullable=False)
    source = Column(Text, nullable=False)  # race | time_trial | workout | estimate | manual
    confidence = Column(Text, default="medium", nullable=False)  # high | medium | low
    notes = Column(Text, nullable=True)
    created_at = Column(DateTime(timezone=True), default=lambda: datetime.now(timezone.utc), nullable=False)

    __table_args__ = (
        UniqueConstraint('athlete_id', 'date', name='uq_vdot_history_athlete_month'),
    )
