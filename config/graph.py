"""Graph store connection settings."""

import os
from typing import Optional

from pydantic import BaseModel, Field


class GraphStoreConfig(BaseModel):
    """Connection settings for the Neo4j HTTP transactional endpoint."""
    uri: str = Field(default="http://localhost:7474", description="Base HTTP URI of the Neo4j server")
    database: str = Field(default="neo4j", description="Database name")
    user: str = Field(default="neo4j", description="Basic auth user")
    password: str = Field(default="", description="Basic auth password")
    timeout: float = Field(default=30.0, description="Request timeout in seconds")
    max_retries: int = Field(default=2, ge=0, description="Retries for transient failures")

    @property
    def commit_url(self) -> str:
        return f"{self.uri.rstrip('/')}/db/{self.database}/tx/commit"

    @classmethod
    def from_env(cls, prefix: Optional[str] = None) -> 'GraphStoreConfig':
        """Create configuration from ``NEO4J_*`` environment variables."""
        prefix = prefix or "NEO4J"
        return cls(
            uri=os.getenv(f'{prefix}_URI', 'http://localhost:7474'),
            database=os.getenv(f'{prefix}_DATABASE', 'neo4j'),
            user=os.getenv(f'{prefix}_USER', 'neo4j'),
            password=os.getenv(f'{prefix}_PASSWORD', ''),
            timeout=float(os.getenv(f'{prefix}_TIMEOUT', '30')),
            max_retries=int(os.getenv(f'{prefix}_MAX_RETRIES', '2')),
        )
