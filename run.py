#!/usr/bin/env python3
"""Run the backup API and scheduler locally"""
import os
from probackup import create_app

if __name__ == '__main__':
    app = create_app(os.environ.get('FLASK_ENV', 'development'))

    host = os.environ.get('HOST', '127.0.0.1')
    port = int(os.environ.get('PORT', 5000))
    # The reloader would start a second scheduler
    app.run(host=host, port=port, debug=app.config.get('DEBUG', False), use_reloader=False)
