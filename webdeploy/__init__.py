"""webdeploy - serverless web application deployment service."""

__version__ = "0.1.0"
