from fastapi.encoders import jsonable_encoder


def success(data=None):
    return {"success": True, "data": jsonable_encoder(data)}


def failure(*messages):
    return {"success": False, "errors": [{"message": message} for message in messages]}
