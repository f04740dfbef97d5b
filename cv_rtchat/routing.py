from django.urls import path

from . import consumers


def websocket_urlpatterns(services):
    return [
        path("ws/chats/", consumers.ChatListConsumer.as_asgi(services=services)),
        path("ws/chat/<str:chat_id>/", consumers.ChatroomConsumer.as_asgi(services=services)),
    ]
