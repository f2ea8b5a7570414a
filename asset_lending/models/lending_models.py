from sqlalchemy import Boolean, Column, DateTime, ForeignKey, Index, Integer, Numeric, String, UniqueConstraint
from sqlalchemy.sql import func

from db.base import Base


class User(Base):
    __tablename__ = "Users"

    UserID = Column(String(64), primary_key=True)
    DisplayName = Column(String(255))
    IsBlacklisted = Column(Boolean, nullable=False, default=False)
    BlacklistReason = Column(String(500))
    IsVerified = Column(Boolean, nullable=False, default=False)
    WalletBalance = Column(Numeric(18, 2), nullable=False, default=0)
    GreenPoints = Column(Integer, nullable=False, default=0)
    Co2SavedKg = Column(Numeric(12, 3), nullable=False, default=0)
    TotalCupsSaved = Column(Integer, nullable=False, default=0)
    CreatedAt = Column(DateTime, server_default=func.now())


class Station(Base):
    __tablename__ = "Stations"

    StationID = Column(String(64), primary_key=True)
    StationName = Column(String(255))
    Kind = Column(String(20), nullable=False)
    IsActive = Column(Boolean, nullable=False, default=True)
    CreatedAt = Column(DateTime, server_default=func.now())


class Asset(Base):
    __tablename__ = "Assets"

    AssetID = Column(String(64), primary_key=True)
    Kind = Column(String(10), nullable=False)
    Status = Column(String(20), nullable=False, default="available")
    # Weak references: no foreign keys, the lending protocol keeps them consistent.
    CurrentHolderID = Column(String(64))
    CurrentCheckoutID = Column(String(36))
    HomeLocationID = Column(String(64))
    CreatedAt = Column(DateTime, server_default=func.now())
    UpdatedAt = Column(DateTime, server_default=func.now())


class Checkout(Base):
    __tablename__ = "Checkouts"

    CheckoutID = Column(String(36), primary_key=True)
    AssetID = Column(String(64), ForeignKey("Assets.AssetID"), nullable=False)
    AssetKind = Column(String(10), nullable=False)
    UserID = Column(String(64), ForeignKey("Users.UserID"), nullable=False)
    OpenedAt = Column(DateTime, nullable=False)
    DueAt = Column(DateTime, nullable=False)
    ClosedAt = Column(DateTime)
    Status = Column(String(20), nullable=False, default="ongoing")
    ChargeBasis = Column(Numeric(18, 2), nullable=False)
    PlannedDurationHours = Column(Integer)
    OpenLocationID = Column(String(64))
    CloseLocationID = Column(String(64))
    DistanceKm = Column(Numeric(8, 2))
    ReturnCondition = Column(String(20))
    Outcome = Column(String(4000))
    ClosedBy = Column(String(64))


Index(
    "UX_Checkouts_OngoingAsset",
    Checkout.AssetID,
    unique=True,
    sqlite_where=Checkout.Status == "ongoing",
    postgresql_where=Checkout.Status == "ongoing",
)
Index(
    "UX_Checkouts_OngoingBikeUser",
    Checkout.UserID,
    unique=True,
    sqlite_where=(Checkout.Status == "ongoing") & (Checkout.AssetKind == "bike"),
    postgresql_where=(Checkout.Status == "ongoing") & (Checkout.AssetKind == "bike"),
)


class WalletLedgerEntry(Base):
    __tablename__ = "WalletLedgerEntries"
    __table_args__ = (
        UniqueConstraint("UserID", "EntryType", "ReferenceID", name="UQ_WalletLedger_UserTypeReference"),
    )

    EntryID = Column(Integer, primary_key=True, autoincrement=True)
    UserID = Column(String(64), ForeignKey("Users.UserID"), nullable=False, index=True)
    EntryType = Column(String(30), nullable=False)
    Amount = Column(Numeric(18, 2), nullable=False)
    BalanceAfter = Column(Numeric(18, 2), nullable=False)
    Description = Column(String(500))
    ReferenceType = Column(String(30))
    ReferenceID = Column(String(64))
    Details = Column(String(2000))
    CreatedAt = Column(DateTime, server_default=func.now())


class RewardLedgerEntry(Base):
    __tablename__ = "RewardLedgerEntries"
    __table_args__ = (
        UniqueConstraint("UserID", "LedgerKind", "EntryType", "ReferenceID", name="UQ_RewardLedger_UserKindTypeReference"),
    )

    EntryID = Column(Integer, primary_key=True, autoincrement=True)
    UserID = Column(String(64), ForeignKey("Users.UserID"), nullable=False, index=True)
    LedgerKind = Column(String(10), nullable=False)
    EntryType = Column(String(30), nullable=False)
    Amount = Column(Numeric(12, 3), nullable=False)
    BalanceAfter = Column(Numeric(12, 3), nullable=False)
    ReferenceID = Column(String(64))
    Description = Column(String(500))
    CreatedAt = Column(DateTime, server_default=func.now())


class PaymentTransaction(Base):
    __tablename__ = "PaymentTransactions"

    PaymentID = Column(Integer, primary_key=True, autoincrement=True)
    UserID = Column(String(64), ForeignKey("Users.UserID"), nullable=False, index=True)
    Direction = Column(String(20), nullable=False)
    Amount = Column(Numeric(18, 2), nullable=False)
    ExternalCode = Column(String(100), nullable=False, unique=True)
    Status = Column(String(20), nullable=False, default="pending")
    NeedsReview = Column(Boolean, nullable=False, default=False)
    BankCode = Column(String(30))
    BankName = Column(String(255))
    AccountNumber = Column(String(50))
    AccountName = Column(String(255))
    Description = Column(String(500))
    GatewayTransactionNo = Column(String(100))
    ResponseCode = Column(String(10))
    ReviewedBy = Column(String(64))
    ReviewedAt = Column(DateTime)
    ReviewReason = Column(String(500))
    CreatedAt = Column(DateTime, nullable=False)
    CompletedAt = Column(DateTime)


class MobilityTrip(Base):
    __tablename__ = "MobilityTrips"

    TripID = Column(String(36), primary_key=True)
    UserID = Column(String(64), ForeignKey("Users.UserID"), nullable=False, index=True)
    TripType = Column(String(20), nullable=False)
    RouteCode = Column(String(50))
    Fare = Column(Numeric(18, 2), nullable=False)
    DistanceKm = Column(Numeric(8, 2), nullable=False)
    Co2SavedKg = Column(Numeric(12, 3), nullable=False)
    PointsEarned = Column(Integer, nullable=False, default=0)
    CreatedAt = Column(DateTime, nullable=False)


class Incident(Base):
    __tablename__ = "Incidents"

    IncidentID = Column(Integer, primary_key=True, autoincrement=True)
    IncidentType = Column(String(30), nullable=False)
    AssetID = Column(String(64))
    StationID = Column(String(64))
    UserID = Column(String(64))
    Description = Column(String(2000))
    Priority = Column(String(20), nullable=False, default="medium")
    Status = Column(String(20), nullable=False, default="open")
    Source = Column(String(50))
    CreatedAt = Column(DateTime, server_default=func.now())


class AuditLog(Base):
    __tablename__ = "AuditLogs"

    AuditID = Column(Integer, primary_key=True, autoincrement=True)
    EntityType = Column(String(50), nullable=False)
    EntityID = Column(String(64), nullable=False)
    Action = Column(String(100), nullable=False)
    Details = Column(String(2000))
    UserID = Column(String(64))
    CreatedAt = Column(DateTime, server_default=func.now())


class NotificationQueue(Base):
    __tablename__ = "NotificationQueue"

    NotificationID = Column(Integer, primary_key=True, autoincrement=True)
    UserID = Column(String(64))
    NotificationType = Column(String(50), nullable=False)
    Payload = Column(String(2000))
    CreatedAt = Column(DateTime, server_default=func.now())
    SentAt = Column(DateTime)
