# api/__init__.py
# HTTP surface for the donation service. The app lives in api.server.
