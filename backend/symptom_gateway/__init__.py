from .openai_gateway import GatewayError, OpenAIGateway

__all__ = ["GatewayError", "OpenAIGateway"]
