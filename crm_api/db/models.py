# crm_api/db/models.py

from sqlalchemy import (
    JSON,
    Boolean,
    Column,
    DateTime,
    Float,
    Integer,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import declarative_base

from automation.clock import utcnow

Base = declarative_base()


class Rule(Base):
    """Tenant automation rule (trigger + conditions + action)."""

    __tablename__ = "automation_rules"

    id = Column(String, primary_key=True)  # UUID
    tenant_id = Column(String, nullable=False, index=True)
    name = Column(String, nullable=False)
    description = Column(Text, nullable=True)
    status = Column(String, nullable=False, index=True)  # "active", "paused"
    priority = Column(Integer, nullable=False, default=0)
    trigger_type = Column(String, nullable=False, index=True)
    trigger_config = Column(JSON, nullable=False)
    action_type = Column(String, nullable=False)
    action_config = Column(JSON, nullable=False)
    conditions = Column(JSON, nullable=False)
    created_by = Column(String, nullable=True)
    version = Column(Integer, nullable=False, default=1)
    template_id = Column(String, nullable=True)  # Set when installed from a template
    created_at = Column(DateTime(timezone=True), default=utcnow, nullable=False, index=True)
    updated_at = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow, nullable=False)


class RuleVersion(Base):
    """Immutable snapshot of a rule definition, kept for rollback."""

    __tablename__ = "automation_rule_versions"
    __table_args__ = (UniqueConstraint("rule_id", "version"),)

    id = Column(Integer, primary_key=True, autoincrement=True)
    rule_id = Column(String, nullable=False, index=True)
    tenant_id = Column(String, nullable=False)
    version = Column(Integer, nullable=False)
    definition = Column(JSON, nullable=False)  # Flat rule payload
    note = Column(Text, nullable=True)
    created_by = Column(String, nullable=True)
    created_at = Column(DateTime(timezone=True), default=utcnow, nullable=False)


class Execution(Base):
    """One RuleExecution per (rule, event). Append-only."""

    __tablename__ = "rule_executions"

    log_id = Column(Integer, primary_key=True, autoincrement=True)  # Append order
    id = Column(String, nullable=False, unique=True)  # UUID
    tenant_id = Column(String, nullable=False, index=True)
    rule_id = Column(String, nullable=False, index=True)
    rule_name = Column(String, nullable=True)
    event_id = Column(String, nullable=False, index=True)
    event_type = Column(String, nullable=False)
    entity_type = Column(String, nullable=False)
    entity_id = Column(String, nullable=False, index=True)
    status = Column(String, nullable=False, index=True)  # "success", "failed", "skipped"
    sequence = Column(Integer, nullable=False)  # Position within the event's dispatch
    occurrence_at = Column(DateTime(timezone=True), nullable=True)  # Cron occurrence (scheduled rules)
    error = Column(Text, nullable=True)
    detail = Column(JSON, nullable=True)
    executed_at = Column(DateTime(timezone=True), default=utcnow, nullable=False, index=True)


class Template(Base):
    """Rule template; tenant_id NULL means public (built-in or shared)."""

    __tablename__ = "automation_templates"

    id = Column(String, primary_key=True)
    tenant_id = Column(String, nullable=True, index=True)
    name = Column(String, nullable=False)
    description = Column(Text, nullable=True)
    category = Column(String, nullable=False, index=True)
    tags = Column(JSON, nullable=False, default=list)
    trigger_type = Column(String, nullable=False)
    trigger_config = Column(JSON, nullable=False)
    action_type = Column(String, nullable=False)
    action_config = Column(JSON, nullable=False)
    conditions = Column(JSON, nullable=False)
    priority = Column(Integer, nullable=False, default=0)
    is_builtin = Column(Boolean, nullable=False, default=False)
    install_count = Column(Integer, nullable=False, default=0)
    version = Column(Integer, nullable=False, default=1)
    created_by = Column(String, nullable=True)
    created_at = Column(DateTime(timezone=True), default=utcnow, nullable=False)
    updated_at = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow, nullable=False)


class TemplateVersion(Base):
    __tablename__ = "template_versions"
    __table_args__ = (UniqueConstraint("template_id", "version"),)

    id = Column(Integer, primary_key=True, autoincrement=True)
    template_id = Column(String, nullable=False, index=True)
    version = Column(Integer, nullable=False)
    definition = Column(JSON, nullable=False)
    changelog = Column(Text, nullable=True)
    created_by = Column(String, nullable=True)
    created_at = Column(DateTime(timezone=True), default=utcnow, nullable=False)


class TemplateReview(Base):
    __tablename__ = "template_reviews"
    __table_args__ = (UniqueConstraint("template_id", "tenant_id", "user_id"),)

    id = Column(Integer, primary_key=True, autoincrement=True)
    template_id = Column(String, nullable=False, index=True)
    tenant_id = Column(String, nullable=False)
    user_id = Column(String, nullable=False)
    rating = Column(Integer, nullable=False)  # 1-5
    comment = Column(Text, nullable=True)
    created_at = Column(DateTime(timezone=True), default=utcnow, nullable=False)
    updated_at = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow, nullable=False)


class Workflow(Base):
    """Workflow graph definition (arena of nodes)."""

    __tablename__ = "workflow_definitions"

    workflow_id = Column(String, primary_key=True)
    tenant_id = Column(String, nullable=False, index=True)
    name = Column(String, nullable=False)
    description = Column(Text, nullable=True)
    status = Column(String, nullable=False, default="draft")  # "draft", "active", "archived"
    version = Column(Integer, nullable=False, default=1)
    entry_node_id = Column(String, nullable=False)
    nodes = Column(JSON, nullable=False)
    created_at = Column(DateTime(timezone=True), default=utcnow, nullable=False)
    updated_at = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow, nullable=False)


class WorkflowEnrollment(Base):
    __tablename__ = "workflow_enrollments"

    enrollment_id = Column(String, primary_key=True)
    tenant_id = Column(String, nullable=False, index=True)
    workflow_id = Column(String, nullable=False, index=True)
    entity_id = Column(String, nullable=False, index=True)
    entity_type = Column(String, nullable=False)
    current_node_id = Column(String, nullable=True)
    status = Column(String, nullable=False, index=True)  # "active", "paused", "completed", "stopped"
    outcome = Column(String, nullable=True)
    enrolled_at = Column(DateTime(timezone=True), nullable=False)
    node_entered_at = Column(DateTime(timezone=True), nullable=False)
    next_check_at = Column(DateTime(timezone=True), nullable=True, index=True)
    wait_expires_at = Column(DateTime(timezone=True), nullable=True)
    last_transition_at = Column(DateTime(timezone=True), nullable=True)
    completed_at = Column(DateTime(timezone=True), nullable=True)
    state = Column(JSON, nullable=False, default=dict)
    history = Column(JSON, nullable=False, default=list)
    source_rule_id = Column(String, nullable=True)
    parent_enrollment_id = Column(String, nullable=True)


class Event(Base):
    """Ingested CRM event log (dedupe + event-window counts)."""

    __tablename__ = "crm_events"
    __table_args__ = (UniqueConstraint("tenant_id", "dedupe_key"),)

    id = Column(Integer, primary_key=True, autoincrement=True)
    event_id = Column(String, nullable=False, unique=True)
    tenant_id = Column(String, nullable=False, index=True)
    entity_id = Column(String, nullable=False, index=True)
    entity_type = Column(String, nullable=False)
    type = Column(String, nullable=False, index=True)
    payload = Column(JSON, nullable=True)
    occurred_at = Column(DateTime(timezone=True), nullable=False, index=True)
    dedupe_key = Column(String, nullable=False)
    source = Column(String, nullable=True)


class Entity(Base):
    """Generic CRM record (contact, lead or deal) the automations act on."""

    __tablename__ = "crm_entities"
    __table_args__ = (UniqueConstraint("tenant_id", "entity_id"),)

    id = Column(Integer, primary_key=True, autoincrement=True)
    tenant_id = Column(String, nullable=False, index=True)
    entity_id = Column(String, nullable=False)
    entity_type = Column(String, nullable=False, default="contact")
    name = Column(String, nullable=True)
    email = Column(String, nullable=True)
    stage = Column(String, nullable=True)
    value = Column(Float, nullable=True)
    score = Column(Integer, nullable=False, default=0)
    tags = Column(JSON, nullable=False, default=list)
    fields = Column(JSON, nullable=False, default=dict)  # Custom fields
    stage_entered_at = Column(DateTime(timezone=True), nullable=True)
    last_outbound_at = Column(DateTime(timezone=True), nullable=True)
    last_reply_at = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), default=utcnow, nullable=False)
    updated_at = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow, nullable=False)


class Task(Base):
    __tablename__ = "crm_tasks"

    id = Column(String, primary_key=True)
    tenant_id = Column(String, nullable=False, index=True)
    entity_id = Column(String, nullable=False, index=True)
    entity_type = Column(String, nullable=True)
    title = Column(String, nullable=False)
    description = Column(Text, nullable=True)
    priority = Column(String, nullable=False, default="medium")
    status = Column(String, nullable=False, default="open")
    due_at = Column(DateTime(timezone=True), nullable=True)
    assignee_id = Column(String, nullable=True)
    source_rule_id = Column(String, nullable=True)
    created_at = Column(DateTime(timezone=True), default=utcnow, nullable=False)


class Notification(Base):
    __tablename__ = "crm_notifications"

    id = Column(String, primary_key=True)
    tenant_id = Column(String, nullable=False, index=True)
    user_id = Column(String, nullable=True, index=True)
    title = Column(String, nullable=False)
    message = Column(Text, nullable=False)
    severity = Column(String, nullable=False, default="medium")
    entity_type = Column(String, nullable=True)
    entity_id = Column(String, nullable=True)
    source_rule_id = Column(String, nullable=True)
    source_workflow_id = Column(String, nullable=True)
    read = Column(Boolean, nullable=False, default=False)
    created_at = Column(DateTime(timezone=True), default=utcnow, nullable=False)


class OutboundEmail(Base):
    __tablename__ = "outbound_emails"

    id = Column(String, primary_key=True)
    tenant_id = Column(String, nullable=False, index=True)
    entity_id = Column(String, nullable=False, index=True)
    to = Column(String, nullable=False)
    subject = Column(String, nullable=True)
    body = Column(Text, nullable=True)
    template_id = Column(String, nullable=True)
    workflow_id = Column(String, nullable=True)
    enrollment_id = Column(String, nullable=True)
    node_id = Column(String, nullable=True)
    status = Column(String, nullable=False, default="queued")
    created_at = Column(DateTime(timezone=True), default=utcnow, nullable=False)


class Suppression(Base):
    __tablename__ = "suppressions"
    __table_args__ = (UniqueConstraint("tenant_id", "email"),)

    id = Column(Integer, primary_key=True, autoincrement=True)
    tenant_id = Column(String, nullable=False, index=True)
    email = Column(String, nullable=False)  # Lower-cased
    reason = Column(String, nullable=False)  # "hard_bounce", "unsubscribed", "spam_complaint", "manual"
    expires_at = Column(DateTime(timezone=True), nullable=True)  # Null means permanent
    created_at = Column(DateTime(timezone=True), default=utcnow, nullable=False)
    updated_at = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow, nullable=False)


class LeadScore(Base):
    __tablename__ = "lead_scores"
    __table_args__ = (UniqueConstraint("tenant_id", "entity_id"),)

    id = Column(Integer, primary_key=True, autoincrement=True)
    tenant_id = Column(String, nullable=False, index=True)
    entity_id = Column(String, nullable=False)
    score = Column(Integer, nullable=False, default=0)  # As of last_activity_at, before decay
    tier = Column(String, nullable=False, default="cold")
    last_activity_at = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), default=utcnow, nullable=False)
    updated_at = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow, nullable=False)
