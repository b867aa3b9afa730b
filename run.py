#!/usr/bin/env python3
"""
Tajer Backend - Main application entry point
"""
from server import create_app
import os

app = create_app()

if __name__ == '__main__':
    port = app.config.get('PORT', 10000)
    debug = os.getenv('DEBUG', 'False').lower() == 'true'

    app.run(
        host='0.0.0.0',
        port=port,
        debug=debug
    )
