"""
sitesnap: snapshot, scrub and share web site file trees and databases.
"""

__version__ = "0.1.0"
