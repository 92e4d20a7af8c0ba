"""
Content portal document parser.

Packages are Word documents uploaded to the portal; each upload is a new
version. Parsing a version fires a trigger event and runs a two-step job
chain (package initialization, then page parsing) on an RQ worker.
"""
