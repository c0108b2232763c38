"""
ThumbPilot service host: FastAPI app, routers and middleware.
"""
