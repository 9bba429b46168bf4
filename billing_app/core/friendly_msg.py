FRIENDLY_MESSAGES = {
    "ConnectionError": "Unable to connect to a required service. Please try again later.",
    "TimeoutError": "The request took too long. Please try again later.",
    "CircuitOpenError": "A payment or notification provider is unavailable. Please try again shortly.",
    "IntegrityError": "The ledger changed while saving. Please retry the operation.",
    "DBAPIError": "Temporary issue while accessing billing data. Please try again shortly.",
    "DatabaseError": "Temporary issue while accessing billing data. Please try again shortly.",
    "ValueError": "Invalid data received. Please check your input and try again.",
    "KeyError": "Some required information is missing.",
}


def get_friendly_message(error: Exception) -> str:
    for key, msg in FRIENDLY_MESSAGES.items():
        if key.lower() in str(type(error)).lower():
            return msg
    return "Something went wrong on our end. Please try again."
