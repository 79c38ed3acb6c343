"""Pydantic schemas for cases, evidence, analyses and structured model outputs."""
