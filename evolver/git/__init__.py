"""Source-control gateway."""

from .github import GitHubGateway, HTTPResponse

__all__ = ["GitHubGateway", "HTTPResponse"]
