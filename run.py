#!/usr/bin/env python3
"""Local runner for the status API with the tier scheduler attached."""
import os
from vwbackup import create_app

if __name__ == '__main__':
    app = create_app(os.environ.get('FLASK_ENV', 'development'))

    # Same port as the container's gunicorn bind
    port = int(os.environ.get('PORT', 8080))
    app.run(host='0.0.0.0', port=port, debug=app.config.get('DEBUG', False))
