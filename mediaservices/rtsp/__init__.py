"""RTSP relay server with stream, session and metrics bookkeeping."""