"""
Central configuration module for the Billing Engine
Reads and validates environment variables with strict checks for production
"""
import os
import sys
from decimal import Decimal
from typing import Optional, List

# Load environment variables from .env file if it exists (dev only)
from dotenv import load_dotenv

if os.getenv("ENV", "dev").lower() == "dev":
    load_dotenv()


class Config:
    """Central configuration class with environment variable validation"""
    
    # Environment
    ENV: str = os.getenv("ENV", "dev").lower()
    
    # Storage
    DATABASE_URL: str = os.getenv("DATABASE_URL", "sqlite:///./billing_engine.db")
    PORT: int = int(os.getenv("PORT", "8000"))
    
    # Shared secret for cron-triggered batch endpoints
    CRON_SECRET: Optional[str] = os.getenv("CRON_SECRET")
    
    # Payment gateway
    GATEWAY_PROVIDER: str = os.getenv("GATEWAY_PROVIDER", "manual").lower()
    GATEWAY_WEBHOOK_SECRET: Optional[str] = os.getenv("GATEWAY_WEBHOOK_SECRET")
    RAZORPAY_KEY_ID: Optional[str] = os.getenv("RAZORPAY_KEY_ID")
    RAZORPAY_KEY_SECRET: Optional[str] = os.getenv("RAZORPAY_KEY_SECRET")
    RAZORPAY_WEBHOOK_SECRET: Optional[str] = os.getenv("RAZORPAY_WEBHOOK_SECRET")
    RAZORPAY_API_BASE: str = os.getenv("RAZORPAY_API_BASE", "https://api.razorpay.com/v1")
    
    # Billing lifecycle
    BILLING_CURRENCY: str = os.getenv("BILLING_CURRENCY", "INR").upper()
    BILLING_PERIOD: str = os.getenv("BILLING_PERIOD", "monthly").lower()  # monthly | days:N
    GRACE_PERIOD_DAYS: int = int(os.getenv("GRACE_PERIOD_DAYS", "14"))
    INVOICE_DUE_DAYS: int = int(os.getenv("INVOICE_DUE_DAYS", "7"))
    MAX_RETRY_ATTEMPTS: int = int(os.getenv("MAX_RETRY_ATTEMPTS", "3"))
    REMINDER_SCHEDULE_DAYS: List[int] = []
    
    # Batch jobs
    BILLING_PAGE_SIZE: int = int(os.getenv("BILLING_PAGE_SIZE", "100"))
    BILLING_MAX_PAGES: int = int(os.getenv("BILLING_MAX_PAGES", "50"))
    TENANT_TIMEOUT_SECONDS: float = float(os.getenv("TENANT_TIMEOUT_SECONDS", "30"))
    CYCLE_LOCK_MAX_AGE_MINUTES: int = int(os.getenv("CYCLE_LOCK_MAX_AGE_MINUTES", "10"))
    IDEMPOTENCY_RETENTION_DAYS: int = int(os.getenv("IDEMPOTENCY_RETENTION_DAYS", "30"))
    ENABLE_SCHEDULER: bool = os.getenv("ENABLE_SCHEDULER", "false").lower() == "true"
    
    # Usage rates (per normalized unit)
    USAGE_RATE_TRAFFIC_GB: Decimal = Decimal(os.getenv("USAGE_RATE_TRAFFIC_GB", "0.10"))
    USAGE_RATE_STORAGE_GB_MONTH: Decimal = Decimal(os.getenv("USAGE_RATE_STORAGE_GB_MONTH", "0.05"))
    USAGE_RATE_COMPUTE_UNIT: Decimal = Decimal(os.getenv("USAGE_RATE_COMPUTE_UNIT", "0.001"))
    USAGE_RATE_DOCS_UNIT: Decimal = Decimal(os.getenv("USAGE_RATE_DOCS_UNIT", "0"))
    USAGE_RATE_GITHUB_UNIT: Decimal = Decimal(os.getenv("USAGE_RATE_GITHUB_UNIT", "0"))
    USAGE_RATE_AI_UNIT: Decimal = Decimal(os.getenv("USAGE_RATE_AI_UNIT", "0"))
    
    # Notifications
    SMTP_HOST: Optional[str] = os.getenv("SMTP_HOST")
    SMTP_PORT: int = int(os.getenv("SMTP_PORT", "587"))
    SMTP_USER: Optional[str] = os.getenv("SMTP_USER")
    SMTP_PASSWORD: Optional[str] = os.getenv("SMTP_PASSWORD")
    SMTP_FROM_ADDRESS: str = os.getenv("SMTP_FROM_ADDRESS", "billing@example.com")
    BILLING_PORTAL_URL: str = os.getenv("BILLING_PORTAL_URL", "http://localhost:3000/billing")
    
    # Logging
    LOG_LEVEL: str = os.getenv("LOG_LEVEL", "INFO").upper()
    
    # Build version (set during build/deploy)
    BUILD_VERSION: str = os.getenv("BUILD_VERSION", "dev")
    
    def __init__(self):
        """Initialize configuration and validate required variables"""
        self._load_reminder_schedule()
        self._validate()
    
    def _load_reminder_schedule(self):
        """Parse REMINDER_SCHEDULE_DAYS ("1,7,13") into a sorted list of ints"""
        raw = os.getenv("REMINDER_SCHEDULE_DAYS", "1,7,13")
        days = []
        for part in raw.split(","):
            part = part.strip()
            if part.isdigit():
                days.append(int(part))
        self.REMINDER_SCHEDULE_DAYS = sorted(set(days))
    
    @property
    def webhook_secret(self) -> Optional[str]:
        """Webhook signing secret for the configured gateway"""
        if self.GATEWAY_PROVIDER == "razorpay":
            return self.RAZORPAY_WEBHOOK_SECRET or self.GATEWAY_WEBHOOK_SECRET
        return self.GATEWAY_WEBHOOK_SECRET
    
    def _validate(self):
        """Validate required configuration based on environment"""
        errors = []
        
        if self.ENV not in ["dev", "test", "staging", "prod"]:
            errors.append(f"Invalid ENV value: {self.ENV}. Must be 'dev', 'test', 'staging', or 'prod'")
        
        if not self.DATABASE_URL:
            errors.append("DATABASE_URL is required but not set")
        elif self.ENV in ["staging", "prod"] and not self.DATABASE_URL.startswith("postgresql"):
            errors.append(f"DATABASE_URL must be a PostgreSQL connection string in {self.ENV} (got: {self.DATABASE_URL[:30]}...)")
        
        if self.GATEWAY_PROVIDER not in ["razorpay", "manual"]:
            errors.append(f"Invalid GATEWAY_PROVIDER: {self.GATEWAY_PROVIDER}. Must be 'razorpay' or 'manual'")
        
        if self.BILLING_PERIOD != "monthly":
            length = self.BILLING_PERIOD.split(":", 1)[-1]
            if not self.BILLING_PERIOD.startswith("days:") or not length.isdigit() or int(length) < 1:
                errors.append(f"Invalid BILLING_PERIOD: {self.BILLING_PERIOD}. Use 'monthly' or 'days:N'")
        
        if self.GRACE_PERIOD_DAYS < 1:
            errors.append("GRACE_PERIOD_DAYS must be at least 1")
        
        if self.BILLING_PAGE_SIZE < 1 or self.BILLING_PAGE_SIZE > 100:
            errors.append(f"BILLING_PAGE_SIZE must be between 1 and 100 (current: {self.BILLING_PAGE_SIZE})")
        
        # Secrets required in staging/prod
        if self.ENV in ["staging", "prod"]:
            if not self.CRON_SECRET:
                errors.append(f"CRON_SECRET is required in {self.ENV}")
            elif len(self.CRON_SECRET) < 32:
                errors.append(f"CRON_SECRET must be at least 32 characters (current: {len(self.CRON_SECRET)})")
            
            if not self.webhook_secret:
                errors.append(f"Webhook secret is required for gateway '{self.GATEWAY_PROVIDER}' in {self.ENV}")
            
            if self.GATEWAY_PROVIDER == "razorpay" and not (self.RAZORPAY_KEY_ID and self.RAZORPAY_KEY_SECRET):
                errors.append("RAZORPAY_KEY_ID and RAZORPAY_KEY_SECRET are required when GATEWAY_PROVIDER=razorpay")
        
        # Fail fast in staging/prod
        if errors and self.ENV in ["staging", "prod"]:
            print("=" * 60, file=sys.stderr)
            print("CONFIGURATION VALIDATION FAILED", file=sys.stderr)
            print("=" * 60, file=sys.stderr)
            for error in errors:
                print(f"  ❌ {error}", file=sys.stderr)
            print("=" * 60, file=sys.stderr)
            sys.exit(1)
        
        # Warn in dev
        if errors and self.ENV == "dev":
            print("=" * 60, file=sys.stderr)
            print("CONFIGURATION WARNINGS (dev mode - continuing)", file=sys.stderr)
            print("=" * 60, file=sys.stderr)
            for error in errors:
                print(f"  ⚠️  {error}", file=sys.stderr)
            print("=" * 60, file=sys.stderr)
    
    @property
    def is_dev(self) -> bool:
        """Check if running in development mode"""
        return self.ENV == "dev"
    
    @property
    def is_test(self) -> bool:
        """Check if running under the test suite"""
        return self.ENV == "test"
    
    @property
    def is_prod(self) -> bool:
        """Check if running in production mode"""
        return self.ENV == "prod"
    
    @property
    def is_staging(self) -> bool:
        """Check if running in staging mode"""
        return self.ENV == "staging"
    
    def get_database_url(self) -> str:
        """Get database URL (alias for DATABASE_URL)"""
        return self.DATABASE_URL
    
    def get_usage_rates(self) -> dict:
        """Per-unit rate for each billable usage category"""
        return {
            "traffic": self.USAGE_RATE_TRAFFIC_GB,
            "storage": self.USAGE_RATE_STORAGE_GB_MONTH,
            "compute": self.USAGE_RATE_COMPUTE_UNIT,
            "docs": self.USAGE_RATE_DOCS_UNIT,
            "github": self.USAGE_RATE_GITHUB_UNIT,
            "ai": self.USAGE_RATE_AI_UNIT,
        }


# Create global config instance
config = Config()
