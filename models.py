from sqlalchemy import Boolean, Column, DateTime, ForeignKey, Integer, String, Text
from sqlalchemy.orm import declarative_base, relationship
from sqlalchemy.sql import func


class TimestampMixin:
	"""Reusable timestamp columns for created/updated tracking."""

	created_at = Column(DateTime(timezone=True), nullable=False, server_default=func.now())
	updated_at = Column(
		DateTime(timezone=True),
		nullable=False,
		server_default=func.now(),
		onupdate=func.now(),
	)

Base = declarative_base()


class SubscriptionPlan(TimestampMixin, Base):
	"""Local mirror of the Stripe product catalogue, one row per plan."""

	__tablename__ = "plans"

	plan_id = Column(Integer, primary_key=True, index=True)
	slug = Column(String(100), unique=True, nullable=False)
	name = Column(String(255), nullable=False, index=True)
	description = Column(Text, nullable=True)
	plan_type = Column(String(50), nullable=False, default="subscription")
	stripe_product_id = Column(String(255), nullable=True)
	display_order = Column(Integer, nullable=False, default=999)
	is_active = Column(Boolean, nullable=False, default=True)

	subscriptions = relationship("BusinessSubscription", back_populates="plan")

	def __repr__(self) -> str:  # pragma: no cover - debug helper
		return f"<SubscriptionPlan slug={self.slug!r} name={self.name!r} order={self.display_order}>"


class BusinessProfile(TimestampMixin, Base):
	"""Business account owned by a user; carries the denormalised billing state."""

	__tablename__ = "business_profiles"

	business_id = Column(Integer, primary_key=True, index=True)
	user_id = Column(String(255), unique=True, nullable=False, index=True)
	business_status = Column(String(50), nullable=True)
	is_active = Column(Boolean, nullable=False, default=False)
	stripe_customer_id = Column(String(255), nullable=True)
	subscription_id = Column(String(255), nullable=True)
	subscription_status = Column(String(50), nullable=True)
	plan_id = Column(String(100), nullable=True)
	plan_name = Column(String(255), nullable=True)
	billing_cycle = Column(String(20), nullable=True)

	subscriptions = relationship("BusinessSubscription", back_populates="business")

	def __repr__(self) -> str:  # pragma: no cover - debug helper
		return (
			f"<BusinessProfile user={self.user_id!r} status={self.subscription_status!r} "
			f"subscription={self.subscription_id!r}>"
		)


class BusinessSubscription(TimestampMixin, Base):
	"""Mirror of a Stripe subscription as last reported by the provider."""

	__tablename__ = "business_subscriptions"

	id = Column(Integer, primary_key=True, index=True)
	business_id = Column(Integer, ForeignKey("business_profiles.business_id"), nullable=True, index=True)
	plan_id = Column(Integer, ForeignKey("plans.plan_id"), nullable=True)
	user_id = Column(String(255), nullable=False, index=True)
	status = Column(String(50), nullable=False, default="incomplete")
	billing_cycle = Column(String(20), nullable=True)
	stripe_subscription_id = Column(String(255), nullable=False, unique=True)
	stripe_customer_id = Column(String(255), nullable=True)
	start_date = Column(DateTime(timezone=True), nullable=True)
	next_billing_date = Column(DateTime(timezone=True), nullable=True)
	current_period_start = Column(DateTime(timezone=True), nullable=True)
	current_period_end = Column(DateTime(timezone=True), nullable=True)

	business = relationship("BusinessProfile", back_populates="subscriptions")
	plan = relationship("SubscriptionPlan", back_populates="subscriptions")

	def __repr__(self) -> str:  # pragma: no cover - debug helper
		return (
			f"<BusinessSubscription stripe_id={self.stripe_subscription_id!r} "
			f"user={self.user_id!r} status={self.status!r}>"
		)
