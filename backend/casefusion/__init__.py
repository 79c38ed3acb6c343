"""Case evidence fusion and scenario reconstruction service."""
