"""IdP sync command line tools."""
