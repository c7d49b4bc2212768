import logging
import os
import time

from dotenv import load_dotenv
from flask import Flask

from models import db, create_indexes

load_dotenv()
logging.basicConfig(level=logging.INFO, format='%(levelname)s %(message)s')
logger = logging.getLogger(__name__)

app = Flask(__name__)
app.config['MONGO_URI'] = os.getenv('MONGO_URI')
app.config['MONGO_DBNAME'] = os.getenv('MONGO_DBNAME', 'timetable')

db.init_app(app)

if __name__ == '__main__':
    with app.app_context():
        logger.info("Creating MongoDB indexes...")
        start = time.time()
        try:
            create_indexes(db._db)
            logger.info("Indexes created successfully in %.2fs", time.time() - start)
        except Exception as e:
            logger.error("Error creating indexes: %s", e)
            raise SystemExit(1)
