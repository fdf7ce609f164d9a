import logging

import motor.motor_asyncio
from pymongo import ASCENDING, DESCENDING, IndexModel

from utxo_indexer.core.config import settings

logger = logging.getLogger(__name__)

# Global client, owned by the app lifespan
client: motor.motor_asyncio.AsyncIOMotorClient = None

async def connect_to_mongo():
    global client
    client = motor.motor_asyncio.AsyncIOMotorClient(settings.MONGO_DETAILS)
    db = client[settings.DATABASE_NAME]
    logger.info("Connected to MongoDB database %s.", settings.DATABASE_NAME)
    return db

async def close_mongo_connection():
    global client
    if client:
        client.close()
        client = None
        logger.info("MongoDB connection closed.")

# Collection getters take the database handle explicitly.
def get_blocks_collection(database):
    return database["blocks"]

def get_transactions_collection(database):
    return database["transactions"]

def get_inputs_collection(database):
    return database["transaction_inputs"]

def get_outputs_collection(database):
    return database["transaction_outputs"]

def get_balances_collection(database):
    return database["address_balances"]

def get_effects_collection(database):
    return database["block_effects"]

async def ensure_indexes(database):
    await get_blocks_collection(database).create_indexes([
        IndexModel([("height", DESCENDING)], unique=True, name="height_unique"),
    ])
    await get_transactions_collection(database).create_indexes([
        IndexModel([("block_id", ASCENDING), ("position", ASCENDING)], name="block_position"),
    ])
    await get_inputs_collection(database).create_indexes([
        IndexModel([("transaction_id", ASCENDING), ("position", ASCENDING)], name="tx_position"),
    ])
    await get_outputs_collection(database).create_indexes([
        IndexModel([("address", ASCENDING)], name="address"),
        IndexModel([("transaction_id", ASCENDING), ("output_index", ASCENDING)], unique=True, name="tx_index_unique"),
    ])
    await get_effects_collection(database).create_indexes([
        IndexModel([("height", DESCENDING)], unique=True, name="height_unique"),
    ])
