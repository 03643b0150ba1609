"""A library for writing static site generators in python."""
from siteforge.builder import Artifact
from siteforge.builder import ArtifactId
from siteforge.builder import Builder
from siteforge.environment.config import Config

__all__ = ["Artifact", "ArtifactId", "Builder", "Config"]
