"""Core domain: settings and the nested set database layer."""
