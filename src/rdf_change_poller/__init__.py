"""Change-stream poller keeping an RDF store in sync with a Wikibase event stream."""

__version__ = "1.0.0"
