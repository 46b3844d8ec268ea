"""cloakroute - custom domain provisioning and visitor routing for a multi-tenant edge."""

__version__ = "0.1.0"
