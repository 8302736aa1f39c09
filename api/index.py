import logging
import os
import sys

from mangum import Mangum

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from guildboard.api import create_app
from guildboard.config import Settings

settings = Settings.from_env()
logging.basicConfig(level=settings.log_level)

app = create_app(settings=settings)
app.root_path = "/api"

handler = Mangum(app)
