import os
import traceback
from flask import Flask, request, jsonify
from dotenv import load_dotenv

load_dotenv()

from rag_core import (
    DocumentStore,
    answer_question,
    clean_document_id,
    fetch_document_text,
    hybrid_search,
    SEARCH_TOP_K,
)

app = Flask(__name__)
STORE = DocumentStore()


def _result_row(candidate):
    return {
        "content": candidate.content,
        "score": candidate.score,
        "page": candidate.metadata.get("page"),
        "sectionNumber": candidate.metadata.get("sectionNumber"),
    }


@app.get("/")
def home():
    return "✅ StudySpark document search is running."


@app.get("/health")
def health():
    return jsonify({"status": "ok"})


@app.post("/process")
def process():
    data = request.get_json(force=True, silent=True) or {}
    document_id = clean_document_id(data.get("documentId") or "")
    content = data.get("documentContent")
    url = data.get("documentUrl")

    print("\n📩 Incoming /process request:")
    print(f"  ➤ documentId: {document_id}")

    if not document_id or not (content or url):
        return jsonify({"success": False, "error": "Document content and ID are required"}), 400

    try:
        if not content:
            print(f"🌐 Fetching document from: {url}")
            content = fetch_document_text(url)

        before = STORE.get_status(document_id)["status"]
        record = STORE.process_document(document_id, content)
        body = {
            "success": True,
            "totalSections": record["totalSections"],
            "processedSections": record["processedSections"],
        }
        if before == "completed":
            body["message"] = "Document already processed"
        elif before == "processing":
            body["message"] = "Document processing in progress"
        return jsonify(body)

    except Exception as e:
        print("\n🔥 ERROR in /process route:")
        print(traceback.format_exc())
        return jsonify({"success": False, "error": str(e)}), 500


@app.get("/processing-status")
def processing_status():
    document_id = request.args.get("documentId")
    if not document_id:
        return jsonify({"error": "Document ID is required"}), 400
    return jsonify(STORE.get_status(clean_document_id(document_id)))


@app.post("/search")
def search():
    data = request.get_json(force=True, silent=True) or {}
    query = (data.get("query") or "").strip()
    document_id = clean_document_id(data.get("documentId") or data.get("pdfUrl") or "")
    limit = data.get("limit", SEARCH_TOP_K)

    print("\n📩 Incoming /search request:")
    print(f"  ➤ documentId: {document_id}")
    print(f"  ➤ query: '{query}'")

    if not query or not document_id:
        return jsonify({"status": "error", "message": "Query and document ID are required"}), 400
    if isinstance(limit, bool) or not isinstance(limit, int) or limit < 1:
        return jsonify({"status": "error", "message": "limit must be a positive integer"}), 400
    if not STORE.has_document(document_id):
        return jsonify({"status": "error", "message": "Document not found"}), 404

    try:
        results = hybrid_search(STORE, document_id, query, k=limit)
    except Exception:
        print("\n🔥 ERROR in /search route:")
        print(traceback.format_exc())
        return jsonify({"status": "error", "message": "search failed"}), 500

    if not results:
        print(f"  ➤ No results found for query: {query}")
        return jsonify({"status": "success", "results": [], "message": "No matching sections found"})

    print(f"✅ Found {len(results)} results")
    return jsonify({
        "status": "success",
        "results": [_result_row(c) for c in results],
        "message": f"Found {len(results)} matching sections",
    })


@app.post("/rag_chat")
def rag_chat():
    data = request.get_json(force=True, silent=True) or {}
    document_id = clean_document_id(data.get("documentId") or "")
    message = (data.get("message") or "").strip()

    print("\n📩 Incoming /rag_chat request:")
    print(f"  ➤ documentId: {document_id}")
    print(f"  ➤ message length: {len(message)}")

    if not document_id or not message:
        return jsonify({"error": "Missing required fields"}), 400

    try:
        result = answer_question(STORE, document_id, message)
    except LookupError:
        return jsonify({"error": "Document not found"}), 404
    except Exception as e:
        print("\n🔥 ERROR in /rag_chat route:")
        print(traceback.format_exc())
        return jsonify({"error": "Error processing chat request", "details": str(e)}), 500

    print(f"✅ Answer preview: {result['response'][:200]}")
    return jsonify({
        "response": result["response"],
        "sources": [_result_row(c) for c in result["sources"]],
    })


if __name__ == "__main__":
    port = int(os.getenv("PORT", "5004"))
    print(f"🚀 StudySpark document search running on port {port}")
    app.run(host="0.0.0.0", port=port, debug=True)
